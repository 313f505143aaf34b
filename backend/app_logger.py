import logging
import sys

from config import settings

ROOT = "bakery"


def _configure() -> logging.Logger:
    root = logging.getLogger(ROOT)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s | %(message)s"))
        root.addHandler(handler)
    # uvicorn configures the real root logger; keep ours out of it
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT}.{name}")


_configure()
