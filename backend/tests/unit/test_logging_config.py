"""
Unit tests for logging helpers.
"""
import os
import sys
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from logging_config import redact_credentials, CredentialRedactingFilter, get_logger, get_request_logger


class TestRedaction:
    """Tests for API key scrubbing."""

    def test_query_parameter_key(self):
        text = 'GET https://generativelanguage.googleapis.com/v1/models?key=abcd1234efgh5678 failed'
        assert 'abcd1234efgh5678' not in redact_credentials(text)
        assert 'key=****' in redact_credentials(text)

    def test_bare_google_key(self):
        text = 'invalid key AIzaSyA1234567890abcdefghijklmnop'
        assert redact_credentials(text) == 'invalid key AIza****'

    def test_plain_text_untouched(self):
        assert redact_credentials('Panel 3 rendered') == 'Panel 3 rendered'

    def test_filter_rewrites_record(self):
        record = logging.LogRecord('comic.test', logging.ERROR, __file__, 1,
                                   'Error for %s', ('AIzaSyA1234567890abcdefghijklmnop',), None)
        assert CredentialRedactingFilter().filter(record) is True
        assert record.getMessage() == 'Error for AIza****'


class TestLoggers:
    """Tests for logger naming."""

    def test_child_logger_name(self):
        assert get_logger('pipeline').name == 'comic.pipeline'

    def test_request_logger_carries_id(self):
        adapter = get_request_logger('pipeline', 'abc123')
        _, kwargs = adapter.process('message', {})
        assert kwargs['extra']['request_id'] == 'abc123'
