import logging
import os
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(pipeline)s] %(message)s"
LEVEL_ENV = "MARKER_ANCHOR_LOG_LEVEL"
LIBRARY_LOGGER = "marker_pipeline"


class PipelineNameFilter(logging.Filter):
    """Stamps every record with the session name so library records read like ours."""

    def __init__(self, pipeline_name: str):
        super().__init__()
        self.pipeline_name = pipeline_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.pipeline = self.pipeline_name
        return True


def resolve_level(level: Union[int, str, None] = None) -> int:
    """Explicit level, else $MARKER_ANCHOR_LOG_LEVEL, else INFO."""
    if level is None:
        level = os.environ.get(LEVEL_ENV) or logging.INFO
    if isinstance(level, str):
        name = level.strip().upper()
        resolved = logging.getLevelName(name)
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level {level!r}")
        return resolved
    return int(level)


def _handler_for(handler: logging.Handler, pipeline_name: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(PipelineNameFilter(pipeline_name))
    return handler


def setup_logger(pipeline_name: str, level: Union[int, str, None] = None) -> logging.Logger:
    logger = logging.getLogger(f"marker_anchor.{pipeline_name}")
    logger.setLevel(resolve_level(level))

    if not logger.handlers:
        logger.addHandler(_handler_for(logging.StreamHandler(), pipeline_name))

    return logger


def add_file_handler(logger: logging.Logger, pipeline_name: str, log_path: str) -> logging.Handler:
    handler = _handler_for(logging.FileHandler(log_path), pipeline_name)
    logger.addHandler(handler)
    return handler


def route_library_logs(logger: logging.Logger, library: str = LIBRARY_LOGGER) -> list[logging.Handler]:
    """
    Send records from the detection/pose library through the session's
    handlers. Returns the handlers that were attached so the caller can
    detach them with unroute_library_logs().
    """
    lib = logging.getLogger(library)
    lib.setLevel(logger.getEffectiveLevel())
    attached = []
    for handler in logger.handlers:
        if handler not in lib.handlers:
            lib.addHandler(handler)
            attached.append(handler)
    return attached


def unroute_library_logs(handlers: list[logging.Handler], library: str = LIBRARY_LOGGER) -> None:
    lib = logging.getLogger(library)
    for handler in handlers:
        lib.removeHandler(handler)
