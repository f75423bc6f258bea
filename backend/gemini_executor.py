"""
Resilient Gemini call executor.

Runs one backend operation against the shared key pool. Quota and rate-limit
failures rotate to the next key; anything else fails fast so a bad prompt or
an invalid request is not hidden behind N pointless retries.
"""
from typing import Callable, Optional, TypeVar

from google.genai import errors as genai_errors

from logging_config import get_logger
from key_pool import KeyPool, get_key_pool

logger = get_logger('executor')

T = TypeVar('T')

RATE_LIMIT_MARKERS = ('rate limit', 'quota', 'resource_exhausted')
RATE_LIMIT_STATUS = 'RESOURCE_EXHAUSTED'

QUOTA_EXHAUSTED_MESSAGE = (
    'All available API keys have reached their daily limit. '
    'Please try again tomorrow or add new keys.'
)


class GeminiServiceError(Exception):
    """Base error for Gemini calls, carrying a message that is safe to show users"""

    classification = 'backend_error'

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or message


class BackendOperationError(GeminiServiceError):
    """Non-quota failure: bad request, safety block, unparsable response..."""
    pass


class NoCredentialsError(GeminiServiceError):
    """The key pool has no keys to try"""

    classification = 'no_credentials'


class RateLimitExhaustedError(GeminiServiceError):
    """Every key in the pool hit its quota during one call"""

    classification = 'all_quotas_exhausted'

    def __init__(self, last_error: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(
            f'All API keys have reached their rate limits ({attempts} tried): {last_error}',
            QUOTA_EXHAUSTED_MESSAGE
        )
        self.last_error = last_error
        self.attempts = attempts


def is_rate_limit_error(error: BaseException) -> bool:
    """
    Decide whether an error means "this key is out of capacity".

    Typed google-genai API errors are checked by code/status. The substring
    match is a fallback for untyped errors and can misfire on messages that
    merely mention a quota.
    """
    if isinstance(error, RateLimitExhaustedError):
        return True
    if isinstance(error, genai_errors.APIError):
        if error.code == 429 or (error.status or '').upper() == RATE_LIMIT_STATUS:
            return True
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def execute(operation: Callable[[str], T], pool: Optional[KeyPool] = None, log=None) -> T:
    """
    Run `operation(api_key)`, rotating keys on rate-limit errors.

    Args:
        operation: Callable taking an API key and returning the result
        pool: Key pool to draw from (defaults to the process-wide pool)
        log: Optional logger/adapter (request-scoped)

    Returns:
        Whatever the first successful attempt returns

    Raises:
        NoCredentialsError: pool is empty
        RateLimitExhaustedError: every key was rate limited (exactly N attempts)
        GeminiServiceError: any non-quota failure, after exactly one attempt
    """
    log = log or logger
    pool = pool if pool is not None else get_key_pool()

    total = pool.size()
    if total == 0:
        raise NoCredentialsError('No API keys are available', 'No API key is configured.')

    last_error = None
    for attempt in range(total):
        key, index = pool.next()
        try:
            return operation(key)
        except Exception as e:
            if is_rate_limit_error(e):
                last_error = e
                log.warning(f"API key #{index} hit a rate limit (attempt {attempt + 1}/{total}), trying next key")
                continue
            log.error(f"Unrecoverable error with API key #{index}: {e}")
            if isinstance(e, GeminiServiceError):
                raise
            raise BackendOperationError(str(e), 'An unexpected error occurred while calling Gemini.') from e

    log.error(f"All {total} API key(s) are rate limited: {last_error}")
    raise RateLimitExhaustedError(last_error, attempts=total) from last_error
