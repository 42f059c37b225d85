from __future__ import annotations

import logging
import time

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | int = "INFO") -> None:
    """Attach a UTC-stamped stderr handler unless the host already configured logging."""
    root = logging.getLogger()
    if not root.handlers:
        formatter = logging.Formatter(LOG_FORMAT)
        formatter.converter = time.gmtime
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)
