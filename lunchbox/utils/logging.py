import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict

from loguru import logger

from lunchbox.utils.context import get_request_id

DEFAULT_LOGGING_CONFIG = {
    "log_dir": "logs",
    "filename": "lunchbox.log",
    "level": "info",
    "rotation": "20 MB",
    "retention": "14 days",
    "console_format": "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {extra[request_id]} | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    "file_format": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | {name}:{function}:{line} - {message}",
    "use_json_logs": False,
}

# Stdlib loggers routed into loguru
INTERCEPTED_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "celery",
    "sqlalchemy.engine",
)


class InterceptHandler(logging.Handler):
    """Forwards stdlib records to loguru, tagged with the current request id."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(request_id=get_request_id() or "app").opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


class CustomizeLogger:
    @classmethod
    def make_logger(cls, config_path: Path, environment: str = "logger"):
        config = {
            **DEFAULT_LOGGING_CONFIG,
            **cls.load_logging_config(config_path, environment),
        }
        level = os.getenv("LOG_LEVEL", config["level"]).upper()

        logger.remove()
        logger.configure(extra={"request_id": "app"})

        # Console logger with colors
        logger.add(
            sys.stdout,
            enqueue=True,
            backtrace=True,
            level=level,
            format=config["console_format"],
            colorize=True,
        )

        # File logger, one file per start date
        file_options = (
            {"serialize": True}
            if config["use_json_logs"]
            else {"format": config["file_format"]}
        )
        logger.add(
            f"{config['log_dir']}/{date.today():%Y-%m-%d}-{config['filename']}",
            rotation=config["rotation"],
            retention=config["retention"],
            enqueue=True,
            backtrace=True,
            level=level,
            colorize=False,
            **file_options,
        )

        cls._setup_intercept_handlers()
        return logger

    @staticmethod
    def _setup_intercept_handlers():
        logging.basicConfig(handlers=[InterceptHandler()], level=0)
        for log_name in INTERCEPTED_LOGGERS:
            logging.getLogger(log_name).handlers = [InterceptHandler()]

    @staticmethod
    def load_logging_config(config_path: Path, environment: str) -> Dict[str, Any]:
        """The environment's section of the JSON config; {} when the file is absent."""
        if not config_path.exists():
            return {}
        with open(config_path) as config_file:
            config = json.load(config_file)
        return config.get(environment, config.get("logger", {}))


# Initialize logger
config_path = Path(os.getenv("LOGGING_CONFIG_PATH", "logging_config.json"))
environment = (
    "production"
    if os.getenv("ENVIRONMENT", "development") == "production"
    else "logger"
)
custom_logger = CustomizeLogger.make_logger(config_path, environment)


def get_logger():
    """Get the custom logger instance with request ID binding."""
    request_id = get_request_id() or "app"
    return custom_logger.bind(request_id=request_id)
