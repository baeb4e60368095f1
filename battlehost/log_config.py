# battlehost/log_config.py
"""
Centralized logging configuration for battlehost.

- Operator console output goes through rich.
- Everything at DEBUG and above is also written to a rotating log file.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILENAME = "battlehost.log"


def resolve_level(name: Optional[str], default: int = logging.INFO) -> int:
    """Turn "debug"/"INFO"/... into a logging level; the env var wins."""
    name = os.environ.get("BATTLEHOST_LOGLEVEL", name or "")
    return getattr(logging, name.upper(), default) if name else default


def setup_logging(level: Optional[str] = None, directory: str = "logs") -> logging.Logger:
    """Replace the root handlers with a rich console handler and a rotating file."""
    from rich.logging import RichHandler

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(logging.DEBUG)

    console = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    console.setLevel(resolve_level(level))
    console.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(console)

    log_dir = Path(directory)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME,
            mode="a",
            maxBytes=5_242_880,  # 5MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)
    except OSError as e:
        logging.getLogger("battlehost").warning("Could not open log directory %s: %s", log_dir, e)

    # asyncio is chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.captureWarnings(True)

    logger = logging.getLogger("battlehost")
    logger.debug(f"Logging initialized. Writing to {log_dir / LOG_FILENAME}")
    return logger
