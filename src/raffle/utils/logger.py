"""Shared logging setup for the raffle service.

`get_logger(name)` configures the root logger on first use from LOG_LEVEL and
LOG_FILE. `configure_logging(force=True)` re-reads them, which the entry point
does after loading a dotenv file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_configured = False
_installed: List[logging.Handler] = []


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None, *, force: bool = False) -> None:
    """Install console (and optional file) handlers on the root logger.

    Explicit arguments win over LOG_LEVEL / LOG_FILE. Handlers installed by an
    earlier call are replaced, handlers added by others are left alone.
    """
    global _configured
    if _configured and not force:
        return

    level_name = (level or os.getenv('LOG_LEVEL') or 'INFO').upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    if log_file is None:
        log_file = os.getenv('LOG_FILE', '')

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()
    root.setLevel(numeric_level)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    file_error: Optional[OSError] = None
    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path, encoding='utf-8'))
        except OSError as exc:
            file_error = exc

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _installed.append(handler)
    _configured = True

    if file_error is not None:
        root.error('Cannot log to %s (%s); console only', log_file, file_error)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
