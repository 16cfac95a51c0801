import logging
import sys

from aws_cpi.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_aws_cpi", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._aws_cpi = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(resolved)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
