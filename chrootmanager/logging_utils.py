from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

from .config import default_log_path

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
FALLBACK_LOG_NAME = "chrootmanager.log"

_CONFIGURED_ATTR = "_chrootmanager_configured"
_PATH_ATTR = "_chrootmanager_log_path"


def _open_log_file(log_path: str) -> Tuple[logging.FileHandler, str]:
    """Open log_path, or a file in the working directory when that is not writable."""

    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: Optional[str] = None,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Send every record (mirror decisions, commands) to the log file.

    The console only shows warnings and errors unless level is DEBUG.
    Safe to call more than once. Returns the file path actually in use.
    """

    requested = log_path or default_log_path()
    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, _CONFIGURED_ATTR, False):
        return getattr(root, _PATH_ATTR, requested)

    file_handler, actual = _open_log_file(requested)
    file_handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        console.setLevel(level if level < logging.INFO else logging.WARNING)
        root.addHandler(console)

    setattr(root, _CONFIGURED_ATTR, True)
    setattr(root, _PATH_ATTR, actual)

    logging.getLogger(__name__).info("Logging initialized (requested=%s, actual=%s)", requested, actual)
    return actual
