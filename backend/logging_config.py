"""
Logging Configuration Module
Centralized logging setup for the Comic Creator backend
"""
import os
import re
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

# Log directory (relative to backend or absolute for production)
LOG_DIR = os.getenv('LOG_DIR', os.path.join(os.path.dirname(__file__), 'logs'))
LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG')
LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-24s | %(request_id)-10s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_RETENTION_DAYS = int(os.getenv('LOG_RETENTION_DAYS', '7'))

APP_LOGGER = 'comic'


class RequestIdFilter(logging.Filter):
    """Injects request_id into log records if not present"""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = 'system'
        return True


_KEY_PATTERNS = [
    re.compile(r'(key=)[\w-]{8,}'),
    re.compile(r'\bAIza[\w-]{20,}'),
]


def redact_credentials(text: str) -> str:
    """Replace anything that looks like a Gemini API key with a mask."""
    for pattern in _KEY_PATTERNS:
        if pattern.groups:
            text = pattern.sub(r'\1****', text)
        else:
            text = pattern.sub('AIza****', text)
    return text


class CredentialRedactingFilter(logging.Filter):
    """Scrubs API keys that SDK error strings sometimes echo back"""
    def filter(self, record):
        message = record.getMessage()
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class RequestAdapter(logging.LoggerAdapter):
    """Adapter that injects request_id into log messages"""
    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})['request_id'] = self.extra.get('request_id', 'system')
        return msg, kwargs


_initialized = False


def _configure_handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler.addFilter(CredentialRedactingFilter())
    return handler


def setup_logging(app_name: str = APP_LOGGER) -> logging.Logger:
    """
    Set up application logging with file rotation.

    Args:
        app_name: Base name for log files and the root application logger

    Returns:
        Root logger for the application
    """
    global _initialized

    if _initialized:
        return logging.getLogger(app_name)

    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(app_name)
    logger.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.DEBUG))
    logger.handlers = []

    # Daily file rotation, console at INFO
    file_handler = TimedRotatingFileHandler(
        filename=os.path.join(LOG_DIR, f'{app_name}.log'),
        when='midnight',
        backupCount=LOG_RETENTION_DAYS,
        encoding='utf-8'
    )
    for handler, level in ((file_handler, logging.DEBUG), (logging.StreamHandler(), logging.INFO)):
        logger.addHandler(_configure_handler(handler, level))

    logger.propagate = False

    _initialized = True
    logger.info(f"Logging initialized: level={LOG_LEVEL}, dir={LOG_DIR}")

    return logger


def get_logger(module_name: str) -> logging.Logger:
    """
    Get a child logger for a specific module.

    Args:
        module_name: Name of the module (e.g., 'keys', 'pipeline', 'gemini')

    Returns:
        Logger instance for the module
    """
    return logging.getLogger(f'{APP_LOGGER}.{module_name}')


def get_request_logger(module_name: str, request_id: str) -> RequestAdapter:
    """
    Get a logger adapter with request_id for tracking.

    Args:
        module_name: Name of the module
        request_id: Session/request ID for tracking

    Returns:
        RequestAdapter with request_id injected
    """
    logger = get_logger(module_name)
    return RequestAdapter(logger, {'request_id': request_id})
