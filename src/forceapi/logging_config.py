from __future__ import annotations

import logging
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[int]) -> None:
    """Set the root level for the CLI (WARNING when ``level`` is None)."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=_FORMAT, datefmt="%H:%M:%S")
    root.setLevel(level if level is not None else logging.WARNING)

    # Request/response bodies are traced by ForceAPI.trace_on(); urllib3 adds only noise.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
