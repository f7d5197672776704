"""
Tests for the transient-failure retry helper.
"""
import sys
import os
from unittest.mock import patch, MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from retry import UpstreamError, call_with_retry, is_transient, get_json


class TestIsTransient:

    def test_status_attribute(self):
        assert is_transient(UpstreamError('slow down', status=429))
        assert not is_transient(UpstreamError('bad request', status=400))

    def test_message_text(self):
        assert is_transient(RuntimeError('RESOURCE_EXHAUSTED: quota'))
        assert is_transient(RuntimeError('503 Service Unavailable'))
        assert not is_transient(ValueError('nope'))


class TestCallWithRetry:
    """Tests for retry/backoff behaviour."""

    def test_retries_transient_then_succeeds(self):
        fn = MagicMock(side_effect=[UpstreamError('busy', status=503), 'ok'])
        sleep = MagicMock()
        assert call_with_retry(fn, sleep=sleep) == 'ok'
        assert fn.call_count == 2
        delay = sleep.call_args[0][0]
        assert 0.2 <= delay <= 0.35

    def test_non_transient_raises_immediately(self):
        fn = MagicMock(side_effect=ValueError('bad'))
        with pytest.raises(ValueError):
            call_with_retry(fn, sleep=MagicMock())
        assert fn.call_count == 1

    def test_gives_up_after_retries(self):
        fn = MagicMock(side_effect=UpstreamError('busy', status=429))
        sleep = MagicMock()
        with pytest.raises(UpstreamError):
            call_with_retry(fn, retries=2, sleep=sleep)
        assert fn.call_count == 3
        assert sleep.call_count == 2


class TestGetJson:

    @patch('retry.requests.get')
    def test_returns_json(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200, json=MagicMock(return_value={'status': 'OK'}))
        assert get_json('https://example.com', {'a': 1}) == {'status': 'OK'}
        mock_get.assert_called_once_with('https://example.com', params={'a': 1}, timeout=10)
