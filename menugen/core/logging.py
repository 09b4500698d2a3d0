# menugen/core/logging.py
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "supabase", "postgrest", "hpack", "aiohttp.access")


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Route all menugen and library logs to stdout.

    ``level`` falls back to the LOG_LEVEL environment variable, then INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level_name)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    library_level = logging.DEBUG if level_name == "DEBUG" else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)

    return root_logger
