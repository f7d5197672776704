"""
Per-user usage tracking for paid third-party APIs.
Costs are estimated in USD micros (1 USD = 1,000,000 micros).
"""
import json
import logging
import threading
import uuid
from collections import Counter, defaultdict
from datetime import datetime

log = logging.getLogger('salesapp.usage')

PRICE_TABLE = {
    # Google Maps
    'google_maps:text_search': 32000,
    'google_maps:place_details': 17000,
    'google_maps:nearby_search': 32000,
    'google_maps:geocoding': 5000,
    'google_maps:directions': 5000,
    # Gemini, counted per call
    'gemini:generate_content': 250,
    'vertex-gemini:generate_content': 250,
    # GUS is free
    'gus:search': 0,
    # AI assistant
    'assistant:query': 1000,
    'gemini:admin_chat': 500,
    'vertex-gemini:admin_chat': 500,
    # Company research
    'vertex-gemini:enrich_company': 250,
}

GEMINI_SERVICES = ('gemini', 'vertex-gemini')
DEFAULT_MONTHLY_LIMIT = 100


def calculate_estimated_cost(service, action, quantity=1):
    return PRICE_TABLE.get(f'{service}:{action}', 0) * quantity


def cost_category(service, action):
    """'chat', 'search' or None."""
    if (service in GEMINI_SERVICES and action == 'admin_chat') or service == 'assistant:query':
        return 'chat'
    if service in ('google_maps', 'gus') or (service in GEMINI_SERVICES and action == 'generate_content'):
        return 'search'
    return None


def log_usage(conn, user_id, service, action, quantity=1, details=None):
    """Record one usage entry and bump the user's aggregate stats. Never raises."""
    try:
        cost = calculate_estimated_cost(service, action, quantity)
        conn.execute('''
            INSERT INTO usage_logs (id, user_id, timestamp, service, action, quantity,
                estimated_cost_micros, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (uuid.uuid4().hex, user_id, datetime.now().isoformat(timespec='milliseconds'),
              service, action, quantity, cost, json.dumps(details or {})))

        row = conn.execute('SELECT usage_stats FROM users WHERE id = ?', (user_id,)).fetchone()
        if row is not None:
            stats = json.loads(row['usage_stats'] or '{}')
            stats[f'{service}_cost'] = stats.get(f'{service}_cost', 0) + cost
            stats['totalCost'] = stats.get('totalCost', 0) + cost
            stats['queryCount'] = stats.get('queryCount', 0) + 1
            category = cost_category(service, action)
            if category:
                key = f'{category}_cost'
                stats[key] = stats.get(key, 0) + cost
            conn.execute('UPDATE users SET usage_stats = ? WHERE id = ?', (json.dumps(stats), user_id))
        conn.commit()
    except Exception:
        log.exception('Failed to log usage for %s %s:%s', user_id, service, action)


def get_monthly_usage(conn, user_id, service, action=None, now=None):
    """Number of usage entries for this user/service since the 1st of the current month."""
    now = now or datetime.now()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()
    query = 'SELECT COUNT(*) FROM usage_logs WHERE user_id = ? AND service = ? AND timestamp >= ?'
    params = [user_id, service, start]
    if action:
        query += ' AND action = ?'
        params.append(action)
    return conn.execute(query, params).fetchone()[0]


def has_remaining_quota(conn, user_id, max_limit=DEFAULT_MONTHLY_LIMIT,
                        service='gemini', action='admin_chat'):
    return get_monthly_usage(conn, user_id, service, action) < max_limit


class UsageTracker:
    """
    Counts API calls made on behalf of one request (possibly from worker
    threads) and writes them as usage entries once the request is done.
    """
    def __init__(self, service):
        self.service = service
        self.counts = Counter()
        self._lock = threading.Lock()

    def __call__(self, action, quantity=1):
        with self._lock:
            self.counts[action] += quantity

    def flush(self, conn, user_id, details=None):
        for action, quantity in sorted(self.counts.items()):
            log_usage(conn, user_id, self.service, action, quantity, details)
        self.counts.clear()


def cost_report(conn, date_from=None, date_to=None):
    """
    Per-user cost summary in USD. With both dates the window is
    [date_from 00:00, date_to 23:59:59.999]; otherwise all history.
    """
    query = 'SELECT user_id, service, action, estimated_cost_micros FROM usage_logs'
    params = []
    if date_from and date_to:
        query += ' WHERE timestamp >= ? AND timestamp <= ?'
        params = [f'{date_from}T00:00:00', f'{date_to}T23:59:59.999']

    totals = defaultdict(lambda: {'queryCount': 0, 'totalCost': 0, 'chatCost': 0, 'searchCost': 0})
    for r in conn.execute(query, params).fetchall():
        cost = r['estimated_cost_micros'] or 0
        stats = totals[r['user_id']]
        stats['queryCount'] += 1
        stats['totalCost'] += cost
        category = cost_category(r['service'], r['action'])
        if category == 'chat':
            stats['chatCost'] += cost
        elif category == 'search':
            stats['searchCost'] += cost

    users = []
    for u in conn.execute('SELECT id, name, email FROM users').fetchall():
        stats = totals.get(u['id'])
        if not stats or (stats['totalCost'] <= 0 and stats['queryCount'] <= 0):
            continue
        users.append({
            'id': u['id'],
            'name': u['name'] or 'Nieznany',
            'email': u['email'] or 'brak@email',
            'queryCount': stats['queryCount'],
            'totalCost': stats['totalCost'] / 1_000_000,
            'chatCost': stats['chatCost'] / 1_000_000,
            'searchCost': stats['searchCost'] / 1_000_000,
        })
    users.sort(key=lambda u: u['totalCost'], reverse=True)
    return {'users': users, 'totalSystemCost': sum(u['totalCost'] for u in users)}
