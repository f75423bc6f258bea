"""
Cancellation flags for chapter generation runs

In-process runs (background threads) use a threading.Event per session.
Runs on Celery workers use RedisCancelFlag so the web process can raise
the flag for a worker in another process. Both expose is_set().
"""
import os
import threading
from typing import Dict, Optional

import redis

from logging_config import get_logger

logger = get_logger('cancel')

# Redis config
REDIS_HOST = os.getenv('REDIS_HOST', 'localhost')
REDIS_PORT = int(os.getenv('REDIS_PORT', 6379))
REDIS_DB = int(os.getenv('REDIS_DB', 0))

CANCEL_KEY_PREFIX = 'comic:cancel:'
CANCEL_TTL = 6 * 3600  # flags outlive any realistic run, then expire


class RedisCancelFlag:
    """Cancellation flag stored as a Redis key with a TTL."""

    def __init__(self, session_id: str, redis_client: Optional[redis.Redis] = None):
        self.session_id = session_id
        self.key = f"{CANCEL_KEY_PREFIX}{session_id}"
        if redis_client:
            self.redis = redis_client
        else:
            self.redis = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                db=REDIS_DB,
                decode_responses=True
            )

    def set(self):
        self.redis.set(self.key, '1', ex=CANCEL_TTL)
        logger.info(f"Cancel flag raised for session {self.session_id[:8]}")

    def is_set(self) -> bool:
        try:
            return bool(self.redis.exists(self.key))
        except redis.RedisError as e:
            # Unreachable Redis reads as "not cancelled"; the run keeps going
            logger.error(f"Redis error reading cancel flag {self.key}: {e}")
            return False

    def clear(self):
        self.redis.delete(self.key)


class CancelRegistry:
    """Session id -> threading.Event for runs executing in this process."""

    def __init__(self):
        self._flags: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def register(self, session_id: str) -> threading.Event:
        with self._lock:
            flag = threading.Event()
            self._flags[session_id] = flag
            return flag

    def cancel(self, session_id: str) -> bool:
        """Raise the flag; False if the session is not running here."""
        with self._lock:
            flag = self._flags.get(session_id)
        if flag is None:
            return False
        flag.set()
        logger.info(f"Cancel requested for session {session_id[:8]}")
        return True

    def release(self, session_id: str):
        with self._lock:
            self._flags.pop(session_id, None)

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._flags


# Global registry for this process
cancel_registry = CancelRegistry()
