"""
Google Cloud Vision text detection over the REST endpoint (images:annotate).
"""
import logging
import os
import re

import requests

from retry import ConfigurationError, UpstreamError, call_with_retry

log = logging.getLogger('salesapp.vision')

VISION_URL = os.environ.get('GOOGLE_VISION_URL', 'https://eu-vision.googleapis.com/v1/images:annotate')
GOOGLE_VISION_API_KEY = os.environ.get('GOOGLE_VISION_API_KEY', '')

_DATA_URL_PREFIX = re.compile(r'^data:image/\w+;base64,')


def strip_data_url(image):
    """'data:image/jpeg;base64,AAAA' -> 'AAAA'."""
    return _DATA_URL_PREFIX.sub('', image)


def language_hints(language):
    return ['pl', 'en'] if language == 'pl' else ['en']


def detect_text(image_b64, language='pl', api_key=None):
    """Run TEXT_DETECTION on a base64 image. Returns the full detected text, or '' when none."""
    api_key = api_key or GOOGLE_VISION_API_KEY or os.environ.get('GOOGLE_VISION_API_KEY', '')
    if not api_key:
        raise ConfigurationError('Google Vision API key not configured')

    payload = {'requests': [{
        'image': {'content': strip_data_url(image_b64)},
        'features': [{'type': 'TEXT_DETECTION'}],
        'imageContext': {'languageHints': language_hints(language)},
    }]}

    def _call():
        resp = requests.post(VISION_URL, params={'key': api_key}, json=payload, timeout=20)
        resp.raise_for_status()
        return resp.json()

    data = call_with_retry(_call)
    response = (data.get('responses') or [{}])[0]
    if response.get('error'):
        raise UpstreamError(response['error'].get('message', 'Vision API error'))
    annotations = response.get('textAnnotations') or []
    if not annotations:
        return ''
    return annotations[0].get('description') or ''
