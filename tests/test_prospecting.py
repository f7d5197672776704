"""
Tests for route geometry and the Maps-backed lead search (HTTP mocked).
"""
import sys
import os
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import prospecting
from prospecting import haversine_m, sample_path, decode_route, search_radius, search_route, opening_details
from retry import ConfigurationError, UpstreamError
from usage import UsageTracker

# Encoded polyline from the Google format documentation
EXAMPLE_POLYLINE = '_p~iF~ps|U_ulLnnqC_mqNvxq`@'

PLACES = [
    {'place_id': 'a', 'name': 'Chłodnia Mroźnia', 'vicinity': 'Błonie', 'user_ratings_total': 9,
     'geometry': {'location': {'lat': 52.2, 'lng': 20.6}}},
    {'place_id': 'b', 'name': 'Biuro Rachunkowe', 'vicinity': 'Warszawa', 'user_ratings_total': 99,
     'geometry': {'location': {'lat': 52.23, 'lng': 21.0}}},
]


def fake_maps(url, params=None, timeout=10, retries=2):
    if url == prospecting.GEOCODE_URL:
        return {'status': 'OK', 'results': [{'geometry': {'location': {'lat': 52.23, 'lng': 21.01}}}]}
    if url == prospecting.NEARBY_URL:
        return {'status': 'OK', 'results': PLACES}
    if url == prospecting.DETAILS_URL:
        return {'status': 'OK', 'result': {
            'formatted_phone_number': '22 123 45 67',
            'website': f"https://{params['place_id']}.pl",
            'editorial_summary': {'overview': 'Opis'},
            'opening_hours': {'weekday_text': ['poniedziałek: 08:00–16:00']},
        }}
    if url == prospecting.DIRECTIONS_URL:
        return {'status': 'OK', 'routes': [{'overview_polyline': {'points': EXAMPLE_POLYLINE}}]}
    raise AssertionError(f'unexpected url {url}')


@pytest.fixture(autouse=True)
def maps_key(monkeypatch):
    monkeypatch.setattr(prospecting, 'GOOGLE_MAPS_API_KEY', 'test-key')


class TestGeometry:
    """Tests for haversine distance and route sampling."""

    def test_haversine_warsaw_krakow(self):
        d = haversine_m({'lat': 52.2297, 'lng': 21.0122}, {'lat': 50.0647, 'lng': 19.9450})
        assert 245000 < d < 260000

    def test_haversine_zero(self):
        p = {'lat': 52.0, 'lng': 21.0}
        assert haversine_m(p, p) == 0

    def test_sample_path_every_interval(self):
        # ~5.56 km between consecutive points
        path = [{'lat': 52.0 + i * 0.05, 'lng': 21.0} for i in range(11)]
        samples = sample_path(path, 10000)
        assert samples == [path[i] for i in (0, 2, 4, 6, 8, 10)]

    def test_sample_path_empty(self):
        assert sample_path([], 10000) == []

    def test_decode_route(self):
        path = decode_route(EXAMPLE_POLYLINE)
        assert path[0] == {'lat': pytest.approx(38.5), 'lng': pytest.approx(-120.2)}
        assert len(path) == 3


class TestLeadSearch:
    """Tests for radius / route search with Maps responses mocked."""

    @patch('prospecting.get_json', side_effect=fake_maps)
    def test_search_radius(self, mock_get):
        tracker = UsageTracker('google_maps')
        result = search_radius('Warszawa', ['logistics'], track=tracker)
        assert result['center'] == {'lat': 52.23, 'lng': 21.01}
        assert [r['id'] for r in result['results']] == ['b', 'a']
        first = result['results'][0]
        assert first['phone'] == '22 123 45 67'
        assert first['website'] == 'https://b.pl'
        assert first['summary'] == 'Opis'
        assert first['profile'] == 'logistics'
        assert first['score'] == 50 + 16
        assert result['results'][1]['score'] == 50 + 20 + 8
        assert tracker.counts == {'geocoding': 1, 'nearby_search': 1, 'place_details': 2}

    @patch('prospecting.get_json', side_effect=fake_maps)
    def test_search_route_dedupes(self, mock_get):
        tracker = UsageTracker('google_maps')
        result = search_route('Warszawa', 'Kraków', track=tracker)
        assert len(result['route']) == 3
        assert sorted(r['id'] for r in result['results']) == ['a', 'b']
        assert tracker.counts['directions'] == 1
        assert tracker.counts['nearby_search'] == 3

    @patch('prospecting.get_json')
    def test_geocoding_failure(self, mock_get):
        mock_get.return_value = {'status': 'ZERO_RESULTS', 'results': []}
        with pytest.raises(UpstreamError):
            search_radius('Nowhere')

    @patch('prospecting.get_json', side_effect=fake_maps)
    def test_details_failure_keeps_place(self, mock_get):
        def flaky(url, params=None, **kwargs):
            if url == prospecting.DETAILS_URL:
                raise RuntimeError('boom')
            return fake_maps(url, params)
        mock_get.side_effect = flaky
        result = search_radius('Warszawa')
        assert len(result['results']) == 2
        assert result['results'][0]['phone'] is None

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(prospecting, 'GOOGLE_MAPS_API_KEY', '')
        monkeypatch.delenv('GOOGLE_MAPS_API_KEY', raising=False)
        with pytest.raises(ConfigurationError):
            search_radius('Warszawa')


class TestOpeningDetails:
    """Tests for the place details endpoint payload."""

    @patch('prospecting.get_json', side_effect=fake_maps)
    def test_opening_details(self, mock_get):
        details = opening_details('b')
        assert details['openingHours'] == ['poniedziałek: 08:00–16:00']
        assert mock_get.call_args[0][1]['language'] == 'pl'

    @patch('prospecting.get_json')
    def test_error_status(self, mock_get):
        mock_get.return_value = {'status': 'INVALID_REQUEST', 'error_message': 'Bad place'}
        with pytest.raises(UpstreamError) as exc:
            opening_details('zzz')
        assert exc.value.status == 400
        assert str(exc.value) == 'Bad place'
