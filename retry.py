"""
Retry helper for third-party calls: Maps, Vision, the GUS SOAP transport and
the one-shot Gemini research prompts. The assistant chat does not retry; it
falls back to the next model instead. Only rate-limit / overload responses
are retried; everything else propagates.
"""
import logging
import random
import time

import requests

log = logging.getLogger('salesapp.retry')

TRANSIENT_STATUSES = (429, 503)


class ConfigurationError(RuntimeError):
    """A required setting (API key, host, secret) is missing."""


class UpstreamError(RuntimeError):
    """A third-party API answered with an error."""
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


def _status_of(exc):
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code
    for attr in ('status', 'status_code', 'code'):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_transient(exc):
    status = _status_of(exc)
    if status in TRANSIENT_STATUSES:
        return True
    text = str(exc)
    return '429' in text or '503' in text or 'RESOURCE_EXHAUSTED' in text


def call_with_retry(fn, retries=2, base_delay=0.2, sleep=time.sleep):
    """Call fn(); on a transient failure wait base*2^(n-1) plus jitter and try again."""
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= retries or not is_transient(e):
                raise
            attempt += 1
            delay = base_delay * (2 ** (attempt - 1)) + random.random() * 0.15
            log.warning('Transient upstream error (attempt %d/%d), retrying in %.2fs: %s',
                        attempt, retries, delay, e)
            sleep(delay)


def get_json(url, params=None, timeout=10, retries=2):
    """GET a JSON API with retries on 429/503."""
    def _call():
        resp = requests.get(url, params=params, timeout=timeout)
        if resp.status_code in TRANSIENT_STATUSES:
            resp.raise_for_status()
        return resp.json()
    return call_with_retry(_call, retries=retries)
