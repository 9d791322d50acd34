"""
Logging configuration for the helpdesk engine.

Console output only; deployments collect stdout.
"""

import logging
import sys
from typing import Optional

from .config import settings, AppSettings


def setup_logging(app: Optional[AppSettings] = None) -> None:
    """Install a stdout handler on the root logger."""
    app = app or settings.app

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, app.log_level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)

    console_format = (
        "%(asctime)s - %(name)s - %(levelname)s - "
        "%(message)s"
    )

    if app.debug:
        console_format = (
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(filename)s:%(lineno)d] - %(message)s"
        )

    console_handler.setFormatter(logging.Formatter(console_format))
    root_logger.addHandler(console_handler)
