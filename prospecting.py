"""
Lead prospecting over the Google Maps web services.
Geocoding, Places nearby search / details and Directions, plus the
haversine sampling used to search for companies along a driving route.
"""
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor

import polyline

from lead_profiles import search_keyword, score_place
from retry import ConfigurationError, UpstreamError, get_json

log = logging.getLogger('salesapp.prospecting')

GOOGLE_MAPS_API_KEY = os.environ.get('GOOGLE_MAPS_API_KEY', '')

GEOCODE_URL = 'https://maps.googleapis.com/maps/api/geocode/json'
NEARBY_URL = 'https://maps.googleapis.com/maps/api/place/nearbysearch/json'
DETAILS_URL = 'https://maps.googleapis.com/maps/api/place/details/json'
DIRECTIONS_URL = 'https://maps.googleapis.com/maps/api/directions/json'

EARTH_RADIUS_M = 6371e3
RADIUS_SEARCH_M = 20000
ROUTE_SAMPLE_INTERVAL_M = 10000
ROUTE_SEARCH_RADIUS_M = 5000
MAX_ROUTE_SAMPLES = 20
MAX_RESULTS = 20
DETAIL_WORKERS = 8

SEARCH_DETAIL_FIELDS = 'formatted_phone_number,website,editorial_summary'
FULL_DETAIL_FIELDS = 'formatted_phone_number,website,editorial_summary,opening_hours'


def _api_key():
    key = GOOGLE_MAPS_API_KEY or os.environ.get('GOOGLE_MAPS_API_KEY', '')
    if not key:
        raise ConfigurationError('Google Maps API key not configured')
    return key


def _noop_track(action, quantity=1):
    pass


# ── Geometry ────────────────────────────────────────────────────

def haversine_m(p1, p2):
    """Great-circle distance in metres between {'lat','lng'} points."""
    phi1 = math.radians(p1['lat'])
    phi2 = math.radians(p2['lat'])
    d_phi = math.radians(p2['lat'] - p1['lat'])
    d_lambda = math.radians(p2['lng'] - p1['lng'])
    a = (math.sin(d_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def sample_path(path, interval_m):
    """Points roughly every interval_m along the path. The first point is always kept."""
    if not path:
        return []
    samples = [path[0]]
    accumulated = 0.0
    for p1, p2 in zip(path, path[1:]):
        d = haversine_m(p1, p2)
        if accumulated + d >= interval_m:
            samples.append(p2)
            accumulated = 0.0
        else:
            accumulated += d
    return samples


def decode_route(points):
    return [{'lat': lat, 'lng': lng} for lat, lng in polyline.decode(points)]


# ── Maps web services ───────────────────────────────────────────

def geocode(address, track=_noop_track):
    data = get_json(GEOCODE_URL, {'address': address, 'key': _api_key()})
    track('geocoding')
    if data.get('status') != 'OK' or not data.get('results'):
        raise UpstreamError(f"Geocoding failed: {data.get('status')}")
    return data['results'][0]['geometry']['location']


def search_nearby(location, radius, keyword, track=_noop_track):
    data = get_json(NEARBY_URL, {
        'location': f"{location['lat']},{location['lng']}",
        'radius': radius,
        'keyword': keyword,
        'key': _api_key(),
    })
    track('nearby_search')
    if data.get('status') not in ('OK', 'ZERO_RESULTS'):
        raise UpstreamError(f"Places search failed: {data.get('status')}")
    return data.get('results', [])


def place_details(place_id, fields=SEARCH_DETAIL_FIELDS, language=None, track=_noop_track):
    """Raw Places details response (status + result)."""
    params = {'place_id': place_id, 'fields': fields, 'key': _api_key()}
    if language:
        params['language'] = language
    data = get_json(DETAILS_URL, params)
    track('place_details')
    return data


def get_directions(origin, destination, track=_noop_track):
    data = get_json(DIRECTIONS_URL, {'origin': origin, 'destination': destination, 'key': _api_key()})
    track('directions')
    if data.get('status') != 'OK' or not data.get('routes'):
        raise UpstreamError(f"Directions failed: {data.get('status')}")
    return data['routes'][0]


def opening_details(place_id, track=_noop_track):
    """Phone, website, summary and weekday opening hours (Polish) for one place."""
    data = place_details(place_id, FULL_DETAIL_FIELDS, language='pl', track=track)
    if data.get('status') != 'OK':
        raise UpstreamError(data.get('error_message') or f"Google API Error: {data.get('status')}", status=400)
    result = data.get('result', {})
    return {
        'phone': result.get('formatted_phone_number'),
        'website': result.get('website'),
        'summary': (result.get('editorial_summary') or {}).get('overview'),
        'openingHours': (result.get('opening_hours') or {}).get('weekday_text'),
    }


# ── Lead search ─────────────────────────────────────────────────

def _rank(places, limit=MAX_RESULTS):
    ordered = sorted(places, key=lambda p: p.get('user_ratings_total') or 0, reverse=True)
    return ordered[:limit]


def _with_details(places, profile_ids, track):
    def detail(place):
        try:
            details = place_details(place['place_id'], track=track).get('result', {})
        except Exception as e:
            log.warning('Place details failed for %s: %s', place.get('place_id'), e)
            details = {}
        profile, score = score_place(place, profile_ids)
        return {
            'id': place['place_id'],
            'name': place.get('name'),
            'address': place.get('vicinity'),
            'location': (place.get('geometry') or {}).get('location'),
            'rating': place.get('rating'),
            'user_ratings_total': place.get('user_ratings_total'),
            'types': place.get('types'),
            'phone': details.get('formatted_phone_number'),
            'website': details.get('website'),
            'summary': (details.get('editorial_summary') or {}).get('overview'),
            'profile': profile,
            'score': score,
        }

    if not places:
        return []
    with ThreadPoolExecutor(max_workers=min(DETAIL_WORKERS, len(places))) as pool:
        return list(pool.map(detail, places))


def search_radius(address, profile_ids=(), radius=RADIUS_SEARCH_M, track=_noop_track):
    """Companies within `radius` metres of an address, most-reviewed first."""
    center = geocode(address, track)
    places = search_nearby(center, radius, search_keyword(profile_ids), track)
    return {'center': center, 'results': _with_details(_rank(places), list(profile_ids), track)}


def search_route(origin, destination, profile_ids=(), track=_noop_track):
    """Companies within 5 km of points sampled every 10 km along the driving route."""
    route = get_directions(origin, destination, track)
    path = decode_route(route['overview_polyline']['points'])
    samples = sample_path(path, ROUTE_SAMPLE_INTERVAL_M)[:MAX_ROUTE_SAMPLES]
    keyword = search_keyword(profile_ids)

    unique = {}
    for point in samples:
        for place in search_nearby(point, ROUTE_SEARCH_RADIUS_M, keyword, track):
            unique.setdefault(place['place_id'], place)

    log.info('Route search %s -> %s: %d samples, %d unique places',
             origin, destination, len(samples), len(unique))
    return {'route': path, 'results': _with_details(_rank(list(unique.values())), list(profile_ids), track)}
