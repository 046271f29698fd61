from __future__ import annotations

import logging
import sys

from scriptorium.core.config import get_settings


_LOG_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeat calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Driver loggers are noisy at INFO.
    for noisy in ("botocore", "boto3", "urllib3", "aiosqlite", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True
