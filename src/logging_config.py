"""
Structured Logging Configuration
Loguru sinks with stdlib logging interception
"""
import logging
import sys

from loguru import logger

from config import Settings

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_PLAIN_FORMAT = "{time} | {level} | {name}:{function}:{line} | {message}"


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to Loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(settings: Settings) -> None:
    """Configure Loguru logging"""

    logger.remove()

    if settings.LOG_JSON_FORMAT:
        logger.add(sys.stderr, format=_PLAIN_FORMAT, level=settings.LOG_LEVEL, serialize=True)
    else:
        logger.add(sys.stderr, format=_CONSOLE_FORMAT, level=settings.LOG_LEVEL, colorize=True)

    if settings.LOG_FILE:
        logger.add(
            settings.LOG_FILE,
            rotation="00:00",
            retention="30 days",
            level=settings.LOG_LEVEL,
            format=_PLAIN_FORMAT,
            serialize=settings.LOG_JSON_FORMAT,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    logger.info(f"Logging configured: level={settings.LOG_LEVEL}, json={settings.LOG_JSON_FORMAT}")
