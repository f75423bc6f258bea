"""
Unit tests for cancellation flags.
"""
import os
import sys

import redis

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from cancel_flags import RedisCancelFlag, CancelRegistry, CANCEL_KEY_PREFIX, CANCEL_TTL


class TestRedisCancelFlag:
    """Tests for the cross-process flag."""

    def test_set_and_clear(self, fake_redis):
        flag = RedisCancelFlag('session-1', redis_client=fake_redis)
        assert not flag.is_set()
        flag.set()
        assert flag.is_set()
        assert fake_redis.ttls[f'{CANCEL_KEY_PREFIX}session-1'] == CANCEL_TTL
        flag.clear()
        assert not flag.is_set()

    def test_flags_are_per_session(self, fake_redis):
        RedisCancelFlag('session-1', redis_client=fake_redis).set()
        assert not RedisCancelFlag('session-2', redis_client=fake_redis).is_set()

    def test_redis_error_reads_as_not_cancelled(self):
        class BrokenRedis:
            def exists(self, key):
                raise redis.ConnectionError('down')

        assert RedisCancelFlag('session-1', redis_client=BrokenRedis()).is_set() is False


class TestCancelRegistry:
    """Tests for in-process flags."""

    def test_cancel_sets_registered_event(self):
        registry = CancelRegistry()
        flag = registry.register('session-1')
        assert registry.is_running('session-1')
        assert registry.cancel('session-1') is True
        assert flag.is_set()

    def test_cancel_unknown_session(self):
        assert CancelRegistry().cancel('missing') is False

    def test_release(self):
        registry = CancelRegistry()
        registry.register('session-1')
        registry.release('session-1')
        assert not registry.is_running('session-1')
        assert registry.cancel('session-1') is False
