"""
Gemini API Key Pool

Round-robin pool of Gemini API keys shared by every caller in the process.
The primary key (GEMINI_API_KEY) always comes first, followed by any extra
keys listed in GEMINI_API_KEYS (comma or newline separated).
"""
import os
import re
import threading
from typing import List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

from logging_config import get_logger

logger = get_logger('keys')


class ConfigurationError(Exception):
    """Raised when no usable API key is configured"""
    pass


def _split_keys(raw: str) -> List[str]:
    return [part.strip() for part in re.split(r'[\n\r,;]+', raw or '')]


def load_credentials(primary: Optional[str] = None, extra: Optional[str] = None) -> List[str]:
    """
    Build the ordered credential list.

    Args:
        primary: Primary key (defaults to GEMINI_API_KEY, read at call time)
        extra: Additional keys, comma/newline separated (defaults to GEMINI_API_KEYS)

    Returns:
        Ordered list with the primary key first and blanks removed

    Raises:
        ConfigurationError: if no key remains
    """
    if primary is None:
        primary = os.getenv('GEMINI_API_KEY', '')
    if extra is None:
        extra = os.getenv('GEMINI_API_KEYS', '')

    keys = []
    for key in [primary.strip() if primary else ''] + _split_keys(extra):
        if key and key not in keys:
            keys.append(key)

    if not keys:
        raise ConfigurationError(
            'No Gemini API key is configured. Set GEMINI_API_KEY or GEMINI_API_KEYS.'
        )
    return keys


class KeyPool:
    """
    Thread-safe round-robin cursor over a fixed list of API keys.

    The cursor is not reset between calls, so successive independent calls
    spread their load over the whole pool instead of all starting at key 0.
    """

    def __init__(self, keys: List[str]):
        self._keys = tuple(keys)
        self._cursor = 0
        self._lock = threading.Lock()
        logger.info(f"KeyPool initialized with {len(self._keys)} key(s)")

    def next(self) -> Tuple[str, int]:
        """Return (key, index) at the cursor and advance it modulo the pool size."""
        with self._lock:
            if not self._keys:
                raise ConfigurationError('Key pool is empty')
            index = self._cursor
            self._cursor = (self._cursor + 1) % len(self._keys)
        return self._keys[index], index

    def size(self) -> int:
        return len(self._keys)

    def all(self) -> List[str]:
        """Snapshot of the pool (a new list each call)."""
        return list(self._keys)

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor


# Global singleton - shared across ALL requests and pipeline runs
_key_pool: Optional[KeyPool] = None
_key_pool_lock = threading.Lock()


def get_key_pool() -> KeyPool:
    """Get or create the global key pool (built from the environment on first use)."""
    global _key_pool
    with _key_pool_lock:
        if _key_pool is None:
            _key_pool = KeyPool(load_credentials())
        return _key_pool


def reset_key_pool():
    """Drop the global pool so the next call re-reads the environment."""
    global _key_pool
    with _key_pool_lock:
        _key_pool = None
