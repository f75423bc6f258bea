"""
Unit tests for the key-rotating call executor.
"""
import os
import sys

import pytest
from google.genai import errors as genai_errors

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from key_pool import KeyPool
from gemini_executor import (
    execute, is_rate_limit_error, GeminiServiceError, BackendOperationError,
    NoCredentialsError, RateLimitExhaustedError, QUOTA_EXHAUSTED_MESSAGE
)


def quota_error():
    return genai_errors.ClientError(429, {
        'error': {'code': 429, 'message': 'Resource has been exhausted', 'status': 'RESOURCE_EXHAUSTED'}
    })


class RecordingOperation:
    """Callable that records the keys it was given and fails as instructed."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.keys = []

    def __call__(self, api_key):
        self.keys.append(api_key)
        outcome = self.outcomes.pop(0) if self.outcomes else 'ok'
        if isinstance(outcome, BaseException):
            raise outcome
        return f'{outcome}:{api_key}'


class TestRateLimitClassification:
    """Tests for is_rate_limit_error()."""

    def test_typed_429_is_rate_limit(self):
        """A google-genai 429 ClientError counts as a rate limit."""
        assert is_rate_limit_error(quota_error())

    def test_typed_400_is_not_rate_limit(self):
        """An invalid-argument ClientError does not."""
        error = genai_errors.ClientError(400, {
            'error': {'code': 400, 'message': 'API key not valid', 'status': 'INVALID_ARGUMENT'}
        })
        assert not is_rate_limit_error(error)

    def test_untyped_message_fallback(self):
        """Plain exceptions are classified by their message."""
        assert is_rate_limit_error(RuntimeError('Quota exceeded for this project'))
        assert is_rate_limit_error(RuntimeError('rate limit hit'))
        assert not is_rate_limit_error(RuntimeError('connection reset'))


class TestExecute:
    """Tests for execute()."""

    def test_success_uses_one_attempt(self):
        """The first key is used and nothing else is tried."""
        pool = KeyPool(['k0', 'k1', 'k2'])
        op = RecordingOperation(['ok'])
        assert execute(op, pool=pool) == 'ok:k0'
        assert op.keys == ['k0']

    def test_rotates_past_rate_limited_keys(self):
        """A rate-limited key is skipped in favor of the next one."""
        pool = KeyPool(['k0', 'k1', 'k2'])
        op = RecordingOperation([quota_error(), RuntimeError('quota exceeded'), 'ok'])
        assert execute(op, pool=pool) == 'ok:k2'
        assert op.keys == ['k0', 'k1', 'k2']

    def test_all_rate_limited_makes_exactly_n_attempts(self):
        """Exhaustion is reported after one attempt per key, no more."""
        pool = KeyPool(['k0', 'k1', 'k2'])
        op = RecordingOperation([quota_error() for _ in range(10)])

        with pytest.raises(RateLimitExhaustedError) as exc_info:
            execute(op, pool=pool)

        assert len(op.keys) == 3
        assert sorted(op.keys) == ['k0', 'k1', 'k2']
        assert exc_info.value.attempts == 3
        assert exc_info.value.user_message == QUOTA_EXHAUSTED_MESSAGE
        assert isinstance(exc_info.value.__cause__, genai_errors.ClientError)

    def test_non_quota_error_fails_after_one_attempt(self):
        """Other errors are not retried."""
        pool = KeyPool(['k0', 'k1', 'k2'])
        op = RecordingOperation([ValueError('bad prompt')])

        with pytest.raises(BackendOperationError) as exc_info:
            execute(op, pool=pool)

        assert op.keys == ['k0']
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_service_errors_pass_through_unchanged(self):
        """A GeminiServiceError raised by the operation keeps its type and message."""
        pool = KeyPool(['k0', 'k1'])
        original = BackendOperationError('blocked', 'The request was blocked.')
        op = RecordingOperation([original])

        with pytest.raises(GeminiServiceError) as exc_info:
            execute(op, pool=pool)

        assert exc_info.value is original
        assert op.keys == ['k0']

    def test_cursor_persists_between_calls(self):
        """Independent calls start where the previous one left off."""
        pool = KeyPool(['k0', 'k1', 'k2'])
        assert execute(RecordingOperation(['ok']), pool=pool) == 'ok:k0'
        assert execute(RecordingOperation(['ok']), pool=pool) == 'ok:k1'
        assert pool.cursor == 2

    def test_empty_pool_raises_no_credentials(self):
        """With no keys nothing is attempted."""
        op = RecordingOperation(['ok'])
        with pytest.raises(NoCredentialsError):
            execute(op, pool=KeyPool([]))
        assert op.keys == []

    def test_single_key_pool(self):
        """A one-key pool makes exactly one attempt before giving up."""
        pool = KeyPool(['only'])
        op = RecordingOperation([quota_error(), quota_error()])
        with pytest.raises(RateLimitExhaustedError):
            execute(op, pool=pool)
        assert op.keys == ['only']
