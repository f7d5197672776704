"""
SalesApp - Flask Server
Energy market analytics, lead prospecting CRM, route planner and AI sales assistant
"""
from flask import Flask, Response, request, jsonify, g
from flask_cors import CORS
from functools import wraps
import os
import re
import io
import csv
import json
import time
import uuid
import sqlite3
import secrets
import logging
from datetime import datetime, date, timedelta, timezone

import jwt
from werkzeug.security import generate_password_hash, check_password_hash

from logging_config import setup_logging
from energy_prices import (
    read_upload_rows, import_energy_prices,
    summarize_prices, quarter_date_ranges, daily_summary,
)
from futures_analytics import import_futures_rows, futures_series, futures_details, main_contract_name
from lead_profiles import LEAD_PROFILES, parse_profile_ids
from prospecting import search_radius, search_route, opening_details
from card_parser import parse_business_card, generate_vcard, VCARD_FIELDS
from vision_client import detect_text
from gus_client import GusClient, GusError
from company_intel import enrich_company, client_intelligence, lead_fields, clean_nip
from assistant import (
    AssistantUnavailable, validate_messages, sanitize_text,
    chat_with_fallback, consulting_chat, session_title,
)
from usage import log_usage, has_remaining_quota, UsageTracker, cost_report
from mailbox_import import MailboxImporter
from mailer import send_email
from retry import ConfigurationError, UpstreamError

setup_logging()
log = logging.getLogger('salesapp.app')

app = Flask(__name__)

# --- CORS: restrict to known origins ---
ALLOWED_ORIGINS = [
    origin.strip() for origin in
    os.environ.get('ALLOWED_ORIGINS', 'http://localhost:3000,http://localhost:5000').split(',')
]
CORS(app, origins=ALLOWED_ORIGINS, supports_credentials=True)

# --- JWT Auth configuration ---
JWT_SECRET = os.environ.get('JWT_SECRET', secrets.token_hex(32))
JWT_EXPIRY_HOURS = int(os.environ.get('JWT_EXPIRY_HOURS', '24'))

# Accounts registered with these e-mails get the admin role
ADMIN_EMAILS = [e.strip().lower() for e in os.environ.get('ADMIN_EMAILS', '').split(',') if e.strip()]

CRON_SECRET = os.environ.get('CRON_SECRET', '')
AI_MONTHLY_LIMIT = int(os.environ.get('AI_MONTHLY_LIMIT', '100'))

MAX_PARSE_TEXT_CHARS = 10000
CLEAR_BATCH_SIZE = 100
DEFAULT_PLANNER_POINT = 'Warszawa'

_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def _now():
    return datetime.now().isoformat(timespec='seconds')


def _get_token_from_request():
    """Extract JWT token from Authorization header or query param."""
    auth = request.headers.get('Authorization', '')
    if auth.startswith('Bearer '):
        return auth[7:]
    return request.args.get('token')


def _decode_token(token):
    """Decode and validate a JWT token. Returns payload dict or None."""
    if not token:
        return None
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=['HS256'])
    except jwt.InvalidTokenError:
        return None


def _issue_token(user):
    payload = {
        'uid': user['id'],
        'email': user['email'],
        'role': user['role'],
        'exp': datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRY_HOURS),
        'iat': datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm='HS256')


def _set_identity(payload):
    g.uid = payload.get('uid', '')
    g.email = payload.get('email', '')
    g.role = payload.get('role', 'user')


def login_required(f):
    """Decorator: require a valid JWT token for the endpoint."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _get_token_from_request()
        if not token:
            return jsonify({'error': 'Unauthorized - Missing or invalid Authorization header'}), 401
        payload = _decode_token(token)
        if not payload:
            return jsonify({'error': 'Unauthorized - Invalid token'}), 401
        _set_identity(payload)
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """Decorator: require a valid JWT token AND the admin role (checked against the users table)."""
    @wraps(f)
    def decorated(*args, **kwargs):
        payload = _decode_token(_get_token_from_request())
        if not payload:
            return jsonify({'error': 'Unauthorized'}), 401
        _set_identity(payload)
        conn = get_crm_db()
        row = conn.execute('SELECT role, is_blocked FROM users WHERE id = ?', (g.uid,)).fetchone()
        conn.close()
        if not row or row['role'] != 'admin' or row['is_blocked']:
            return jsonify({'error': 'Forbidden - Admin only'}), 403
        g.role = 'admin'
        return f(*args, **kwargs)
    return decorated


def cron_or_login_required(f):
    """Decorator: accept the CRON_SECRET bearer token (scheduler) or a valid user token."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth = request.headers.get('Authorization', '')
        if CRON_SECRET and secrets.compare_digest(auth.encode(), f'Bearer {CRON_SECRET}'.encode()):
            g.uid, g.email, g.role = 'cron', 'cron', 'system'
            return f(*args, **kwargs)
        payload = _decode_token(_get_token_from_request())
        if payload:
            _set_identity(payload)
            return f(*args, **kwargs)
        if not CRON_SECRET:
            log.error('CRON_SECRET is not configured')
            return jsonify({'error': 'Server configuration error'}), 500
        return jsonify({'error': 'Unauthorized - Invalid cron secret'}), 401
    return decorated


# CRM Database Setup (accounts, leads, planner, assistant sessions, usage)
CRM_DB_PATH = os.environ.get('CRM_DB_PATH', os.path.join(os.path.dirname(__file__), 'crm.db'))
# Market Database Setup (RDN hourly prices, futures quotes)
MARKET_DB_PATH = os.environ.get('MARKET_DB_PATH', os.path.join(os.path.dirname(__file__), 'market.db'))


def _connect(path):
    conn = sqlite3.connect(path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def get_crm_db():
    return _connect(CRM_DB_PATH)


def get_market_db():
    return _connect(MARKET_DB_PATH)


def db_execute_with_retry(conn, sql, params=(), max_retries=3):
    """Execute SQL with retry on database locked errors."""
    for attempt in range(max_retries):
        try:
            return conn.execute(sql, params)
        except sqlite3.OperationalError as e:
            if 'database is locked' in str(e) and attempt < max_retries - 1:
                time.sleep(0.1 * (attempt + 1))
            else:
                raise


def validate_number(val, field_name, min_val=None, max_val=None, allow_none=True):
    """Validate and coerce a numeric value. Returns (value, error_msg)."""
    if val is None or val == '':
        return (None, None) if allow_none else (None, f'{field_name} is required')
    try:
        num = float(val)
    except (ValueError, TypeError):
        return None, f'{field_name} must be a number'
    if num != num or num in (float('inf'), float('-inf')):
        return None, f'{field_name} must be a finite number'
    if min_val is not None and num < min_val:
        return None, f'{field_name} must be >= {min_val}'
    if max_val is not None and num > max_val:
        return None, f'{field_name} must be <= {max_val}'
    return num, None


def require_json():
    """Get JSON body or return 400."""
    data = request.get_json(silent=True)
    if data is None or not isinstance(data, dict):
        return None, (jsonify({'error': 'Request body must be JSON'}), 400)
    return data, None


def _valid_date(value):
    try:
        datetime.strptime(value, '%Y-%m-%d')
        return True
    except (TypeError, ValueError):
        return False


def init_crm_db():
    conn = get_crm_db()
    conn.executescript('''
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            password_hash TEXT NOT NULL,
            role TEXT DEFAULT 'user' CHECK(role IN ('admin', 'user')),
            is_blocked INTEGER DEFAULT 0,
            usage_stats TEXT DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS leads (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            company_name TEXT NOT NULL,
            address TEXT,
            phone TEXT,
            website TEXT,
            nip TEXT,
            status TEXT DEFAULT 'new',
            priority TEXT DEFAULT 'medium',
            notes TEXT,
            key_people TEXT DEFAULT '[]',
            revenue TEXT,
            employees TEXT,
            socials TEXT,
            description TEXT,
            technologies TEXT DEFAULT '[]',
            lat REAL,
            lng REAL,
            scheduled_date TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS planner_settings (
            user_id TEXT NOT NULL,
            date TEXT NOT NULL,
            start_point TEXT,
            end_point TEXT,
            lead_order TEXT DEFAULT '[]',
            updated_at TEXT,
            PRIMARY KEY (user_id, date),
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS chat_sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT,
            messages TEXT DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS usage_logs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            service TEXT NOT NULL,
            action TEXT NOT NULL,
            quantity INTEGER DEFAULT 1,
            estimated_cost_micros INTEGER DEFAULT 0,
            details TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_leads_owner ON leads(owner_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_sessions_user ON chat_sessions(user_id, updated_at);
        CREATE INDEX IF NOT EXISTS idx_usage_user_ts ON usage_logs(user_id, service, timestamp);
        CREATE INDEX IF NOT EXISTS idx_usage_ts ON usage_logs(timestamp);
    ''')
    conn.commit()
    conn.close()


def init_market_db():
    conn = get_market_db()
    conn.executescript('''
        CREATE TABLE IF NOT EXISTS energy_prices (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            hour INTEGER NOT NULL CHECK(hour BETWEEN 1 AND 25),
            price REAL NOT NULL,
            volume REAL DEFAULT 0,
            created_at TEXT,
            created_by TEXT,
            UNIQUE(date, hour)
        );

        CREATE TABLE IF NOT EXISTS futures_data (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            contract TEXT NOT NULL,
            max_price REAL DEFAULT 0,
            min_price REAL DEFAULT 0,
            dkr REAL DEFAULT 0,
            contracts_count REAL DEFAULT 0,
            open_interest REAL DEFAULT 0,
            transactions_count REAL DEFAULT 0,
            turnover_value REAL DEFAULT 0,
            volume REAL DEFAULT 0,
            UNIQUE(date, contract)
        );

        CREATE INDEX IF NOT EXISTS idx_prices_date ON energy_prices(date, hour);
        CREATE INDEX IF NOT EXISTS idx_futures_contract ON futures_data(contract, date);
        CREATE INDEX IF NOT EXISTS idx_futures_date ON futures_data(date);
    ''')
    conn.commit()
    conn.close()


init_crm_db()
init_market_db()


@app.before_request
def _start_timer():
    g.request_started = time.time()


@app.after_request
def _log_request(response):
    if request.path.startswith('/api/'):
        started = getattr(g, 'request_started', None)
        duration_ms = round((time.time() - started) * 1000) if started else None
        log.info('%s %s -> %s', request.method, request.path, response.status_code, extra={
            'route': request.path, 'method': request.method,
            'status': response.status_code, 'duration_ms': duration_ms,
            'uid': getattr(g, 'uid', None),
        })
    return response


def _user_row(conn, uid):
    return conn.execute('SELECT * FROM users WHERE id = ?', (uid,)).fetchone()


def _is_admin(conn):
    row = conn.execute('SELECT role FROM users WHERE id = ?', (g.uid,)).fetchone()
    return bool(row) and row['role'] == 'admin'


# ==================== AUTH ENDPOINTS ====================

@app.route('/api/register', methods=['POST'])
def register():
    data, err = require_json()
    if err:
        return err
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    name = (data.get('name') or '').strip()
    if not _EMAIL_RE.match(email):
        return jsonify({'error': 'Invalid email address'}), 400
    if len(password) < 6:
        return jsonify({'error': 'Password must be at least 6 characters'}), 400
    if len(name) < 2:
        return jsonify({'error': 'Name must be at least 2 characters'}), 400
    try:
        conn = get_crm_db()
        if conn.execute('SELECT 1 FROM users WHERE email = ?', (email,)).fetchone():
            conn.close()
            return jsonify({'error': 'User already exists'}), 400
        user_id = uuid.uuid4().hex
        role = 'admin' if email in ADMIN_EMAILS else 'user'
        conn.execute('''
            INSERT INTO users (id, email, name, password_hash, role, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (user_id, email, name, generate_password_hash(password), role, _now()))
        conn.commit()
        conn.close()
        log.info('Registered %s (%s)', email, role)
        return jsonify({'user': {'id': user_id, 'email': email, 'name': name}}), 201
    except Exception as e:
        log.exception('Registration failed')
        return jsonify({'error': str(e) or 'Registration failed'}), 500


@app.route('/api/auth/login', methods=['POST'])
def auth_login():
    """Authenticate a user and return a JWT token."""
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return jsonify({'error': 'Email and password required'}), 400
    conn = get_crm_db()
    user = conn.execute('SELECT * FROM users WHERE email = ?', (email,)).fetchone()
    conn.close()
    if not user or not check_password_hash(user['password_hash'], password):
        return jsonify({'error': 'Invalid credentials'}), 401
    if user['is_blocked']:
        return jsonify({'error': 'Account blocked'}), 403
    return jsonify({
        'token': _issue_token(user),
        'user': {'id': user['id'], 'email': user['email'], 'name': user['name']},
        'role': user['role'],
        'expires_in': JWT_EXPIRY_HOURS * 3600,
    })


@app.route('/api/auth/verify', methods=['GET'])
def auth_verify():
    """Verify a JWT token is still valid."""
    payload = _decode_token(_get_token_from_request())
    if payload:
        return jsonify({'valid': True, 'uid': payload.get('uid'), 'email': payload.get('email'),
                        'role': payload.get('role')})
    return jsonify({'valid': False}), 401


# ==================== ADMIN USERS ====================

@app.route('/api/admin/users', methods=['GET'])
@admin_required
def admin_list_users():
    try:
        conn = get_crm_db()
        rows = conn.execute(
            'SELECT id, name, email, role, is_blocked, created_at FROM users ORDER BY created_at DESC'
        ).fetchall()
        conn.close()
        users = [{
            'id': r['id'], 'name': r['name'], 'email': r['email'], 'role': r['role'],
            'isBlocked': bool(r['is_blocked']), 'createdAt': r['created_at'],
        } for r in rows]
        return jsonify({'users': users})
    except Exception as e:
        log.exception('Failed to fetch users')
        return jsonify({'error': 'Failed to fetch users'}), 500


@app.route('/api/admin/users', methods=['DELETE'])
@admin_required
def admin_delete_user():
    user_id = request.args.get('id')
    if not user_id:
        return jsonify({'error': 'User ID required'}), 400
    if user_id == g.uid:
        return jsonify({'error': 'Cannot delete yourself'}), 400
    try:
        conn = get_crm_db()
        deleted = conn.execute('DELETE FROM users WHERE id = ?', (user_id,)).rowcount
        conn.execute('DELETE FROM usage_logs WHERE user_id = ?', (user_id,))
        conn.commit()
        conn.close()
        if not deleted:
            return jsonify({'error': 'User not found'}), 404
        log.info('Admin %s deleted user %s', g.uid, user_id)
        return jsonify({'success': True})
    except Exception as e:
        log.exception('Failed to delete user')
        return jsonify({'error': 'Failed to delete user'}), 500


@app.route('/api/admin/users', methods=['PATCH'])
@admin_required
def admin_update_user():
    data = request.get_json(silent=True) or {}
    user_id = data.get('id')
    is_blocked = data.get('isBlocked')
    if not user_id or not isinstance(is_blocked, bool):
        return jsonify({'error': 'Invalid data'}), 400
    if user_id == g.uid:
        return jsonify({'error': 'Cannot block yourself'}), 400
    try:
        conn = get_crm_db()
        conn.execute('UPDATE users SET is_blocked = ? WHERE id = ?', (int(is_blocked), user_id))
        conn.commit()
        row = conn.execute('SELECT id, name, email, role, is_blocked FROM users WHERE id = ?', (user_id,)).fetchone()
        conn.close()
        if not row:
            return jsonify({'error': 'User not found'}), 404
        return jsonify({'user': {
            'id': row['id'], 'name': row['name'], 'email': row['email'],
            'role': row['role'], 'isBlocked': bool(row['is_blocked']),
        }})
    except Exception as e:
        log.exception('Failed to update user')
        return jsonify({'error': 'Failed to update user'}), 500


# ==================== ENERGY PRICES (RDN) ====================

def _price_row(r):
    return {
        'id': r['id'], 'date': r['date'], 'hour': r['hour'], 'price': r['price'],
        'volume': r['volume'], 'createdAt': r['created_at'], 'createdBy': r['created_by'],
    }


@app.route('/api/energy-prices', methods=['GET'])
def list_energy_prices():
    try:
        conn = get_market_db()
        day = request.args.get('date')
        if day:
            rows = conn.execute('SELECT * FROM energy_prices WHERE date = ? ORDER BY hour', (day,)).fetchall()
        else:
            rows = conn.execute('SELECT * FROM energy_prices ORDER BY hour LIMIT 1000').fetchall()
        conn.close()
        prices = [_price_row(r) for r in rows]
        resp = jsonify({'prices': prices, 'count': len(prices)})
        resp.headers['Cache-Control'] = 'no-store'
        return resp
    except Exception as e:
        log.exception('Error fetching energy prices')
        return jsonify({'error': 'Failed to fetch energy prices', 'details': str(e)}), 500


@app.route('/api/energy-prices/daily-summary', methods=['GET'])
def energy_daily_summary():
    day = request.args.get('date')
    if not day:
        return jsonify({'error': 'Date parameter is required'}), 400
    conn = get_market_db()
    rows = conn.execute('SELECT date, hour, price FROM energy_prices WHERE date = ?', (day,)).fetchall()
    conn.close()
    summary = daily_summary([dict(r) for r in rows])
    if not summary:
        return jsonify({'error': 'No prices for this date'}), 404
    return jsonify(summary)


@app.route('/api/energy-prices/upload', methods=['POST'])
@admin_required
def upload_energy_prices():
    file = request.files.get('file')
    if not file:
        return jsonify({'error': 'No file uploaded'}), 400
    try:
        rows = read_upload_rows(file.filename, file.read())
        if not rows:
            return jsonify({'error': 'CSV parsing failed', 'details': 'No data rows found'}), 400
        conn = get_market_db()
        try:
            result = import_energy_prices(conn, rows, g.email or g.uid)
        finally:
            conn.close()
        return jsonify({
            'success': True,
            'count': result['processedCount'],
            'skippedCount': result['skippedCount'],
            'skippedRows': result['skippedRows'],
            'message': f"Successfully uploaded {result['processedCount']} price entries",
        })
    except Exception as e:
        log.exception('Error uploading energy prices')
        return jsonify({'error': 'Upload failed', 'details': str(e)}), 500


@app.route('/api/energy-prices/clear', methods=['DELETE'])
@admin_required
def clear_energy_prices():
    try:
        conn = get_market_db()
        deleted = 0
        while True:
            ids = [r['id'] for r in conn.execute(
                'SELECT id FROM energy_prices LIMIT ?', (CLEAR_BATCH_SIZE,)).fetchall()]
            if not ids:
                break
            conn.execute(f"DELETE FROM energy_prices WHERE id IN ({','.join('?' * len(ids))})", ids)
            conn.commit()
            deleted += len(ids)
        conn.close()
        log.warning('Admin %s cleared %d energy price records', g.uid, deleted)
        return jsonify({'success': True, 'deleted': deleted,
                        'message': f'Successfully deleted {deleted} records'})
    except Exception as e:
        log.exception('Error clearing energy prices')
        return jsonify({'error': 'Failed to clear data', 'details': str(e)}), 500


@app.route('/api/energy-prices/history', methods=['GET'])
def energy_price_history():
    days, err = validate_number(request.args.get('days', 30), 'days', min_val=1, max_val=3660)
    if err:
        return jsonify({'error': err}), 400
    days = int(days)
    try:
        start = (date.today() - timedelta(days=days)).isoformat()
        conn = get_market_db()
        rows = conn.execute(
            'SELECT date, hour, price FROM energy_prices WHERE date >= ? ORDER BY date DESC', (start,)
        ).fetchall()
        conn.close()
        if not rows:
            return jsonify({'history': []})
        resp = jsonify(summarize_prices([dict(r) for r in rows], days=days, heat_map=True))
        resp.headers['Cache-Control'] = 'no-store, max-age=0'
        return resp
    except Exception as e:
        log.exception('Error fetching price history')
        return jsonify({'error': 'Failed to fetch price history', 'details': str(e)}), 500


@app.route('/api/energy-prices/quarters', methods=['GET'])
@login_required
def energy_price_quarters():
    quarters_param = request.args.get('quarters')
    if not quarters_param:
        return jsonify({'error': 'Quarters parameter required'}), 400
    year, err = validate_number(request.args.get('year') or date.today().year, 'year', min_val=2000, max_val=2100)
    if err:
        return jsonify({'error': err}), 400
    try:
        ranges = quarter_date_ranges(quarters_param.split(','), int(year))
        conn = get_market_db()
        ticks = []
        for start, end in ranges:
            ticks.extend(dict(r) for r in conn.execute(
                'SELECT date, hour, price FROM energy_prices WHERE date >= ? AND date <= ? ORDER BY date',
                (start, end)).fetchall())
        conn.close()
        if not ticks:
            return jsonify({'history': [], 'hourlyProfile': [], 'weeklyProfile': [], 'overallAverage': 0})
        return jsonify(summarize_prices(ticks))
    except Exception as e:
        log.exception('Error fetching quarterly data')
        return jsonify({'error': 'Failed to fetch quarterly data', 'details': str(e)}), 500


# ==================== FUTURES ====================

@app.route('/api/energy-prices/futures', methods=['GET'])
def energy_futures():
    limit, err = validate_number(request.args.get('limit', 30), 'limit')
    if err:
        return jsonify({'error': err}), 400
    try:
        today = date.today()
        conn = get_market_db()
        futures = {
            str(today.year + offset): futures_series(conn, main_contract_name(today, offset), int(limit))
            for offset in (1, 2)
        }
        conn.close()
        return jsonify({'futures': futures})
    except Exception as e:
        log.exception('Error fetching futures')
        return jsonify({'error': 'Failed to fetch futures', 'details': str(e)}), 500


@app.route('/api/energy-prices/futures/details', methods=['GET'])
def energy_futures_details():
    target_date = request.args.get('date')
    if target_date and not _valid_date(target_date):
        return jsonify({'error': 'date must be YYYY-MM-DD'}), 400
    try:
        conn = get_market_db()
        payload = futures_details(conn, request.args.get('contract'), target_date)
        conn.close()
        return jsonify(payload)
    except Exception as e:
        log.exception('Error building futures details')
        return jsonify({'error': str(e)}), 500


@app.route('/api/energy-prices/futures/upload', methods=['POST'])
@admin_required
def upload_futures():
    file = request.files.get('file')
    if not file:
        return jsonify({'error': 'No file uploaded'}), 400
    try:
        rows = read_upload_rows(file.filename, file.read())
        conn = get_market_db()
        result = import_futures_rows(conn, rows)
        conn.close()
        if not result['success']:
            return jsonify({'error': result.get('error') or 'Import failed'}), 400
        return jsonify({'success': True, 'count': result['count'],
                        'message': f"Successfully imported {result['count']} futures records"})
    except Exception as e:
        log.exception('Error uploading futures')
        return jsonify({'error': 'Upload failed', 'details': str(e)}), 500


# ==================== MAILBOX IMPORT (CRON) ====================

@app.route('/api/cron/import-email', methods=['GET'])
@cron_or_login_required
def cron_import_email():
    import_type = request.args.get('type')
    try:
        conn = get_market_db()
        results = MailboxImporter().run(conn, import_type if import_type in ('RDN', 'FUTURES') else None)
        conn.close()
        return jsonify({'success': True, 'processed': len(results), 'details': results})
    except Exception as e:
        log.exception('Mailbox import failed')
        return jsonify({'success': False, 'error': str(e)}), 500


# ==================== LEADS CRM ====================

LEAD_JSON_FIELDS = ('key_people', 'technologies', 'socials')

LEAD_EXPORT_HEADERS = [
    'Company Name', 'Address', 'Phone', 'Website', 'NIP', 'Status', 'Priority', 'Notes',
    'Key People', 'Revenue', 'Employees', 'Description', 'Technologies', 'Created At', 'Updated At',
]


def _lead_dict(row):
    r = dict(row)
    lead = {
        'id': r['id'],
        'companyName': r['company_name'],
        'address': r['address'],
        'phone': r['phone'],
        'website': r['website'],
        'nip': r['nip'],
        'status': r['status'],
        'priority': r['priority'],
        'notes': r['notes'],
        'keyPeople': json.loads(r['key_people'] or '[]'),
        'revenue': r['revenue'],
        'employees': r['employees'],
        'socials': json.loads(r['socials']) if r['socials'] else None,
        'description': r['description'],
        'technologies': json.loads(r['technologies'] or '[]'),
        'lat': r['lat'],
        'lng': r['lng'],
        'scheduledDate': r['scheduled_date'],
        'createdAt': r['created_at'],
        'updatedAt': r['updated_at'],
    }
    if 'owner_email' in r:
        lead['ownerEmail'] = r['owner_email'] or 'Unknown'
        lead['ownerId'] = r['owner_id']
    return lead


def _find_lead(conn, lead_id, admin):
    """Own lead, or any lead for admins."""
    if admin:
        return conn.execute('SELECT * FROM leads WHERE id = ?', (lead_id,)).fetchone()
    return conn.execute('SELECT * FROM leads WHERE id = ? AND owner_id = ?', (lead_id, g.uid)).fetchone()


def _query_leads(conn, admin, status=None, priority=None, search=None):
    query = 'SELECT l.*, u.email AS owner_email FROM leads l LEFT JOIN users u ON u.id = l.owner_id WHERE 1=1'
    params = []
    if not admin:
        query += ' AND l.owner_id = ?'
        params.append(g.uid)
    if status:
        query += ' AND l.status = ?'
        params.append(status)
    if priority:
        query += ' AND l.priority = ?'
        params.append(priority)
    query += ' ORDER BY l.created_at DESC'
    rows = conn.execute(query, params).fetchall()
    leads = []
    for row in rows:
        lead = _lead_dict(row)
        if not admin:
            lead.pop('ownerEmail', None)
            lead.pop('ownerId', None)
        leads.append(lead)
    if search:
        needle = search.lower()
        leads = [l for l in leads if needle in (l['companyName'] or '').lower()]
    return leads


@app.route('/api/leads', methods=['GET'])
@login_required
def list_leads():
    try:
        conn = get_crm_db()
        if not _user_row(conn, g.uid):
            conn.close()
            return jsonify({'error': 'User not found'}), 404
        leads = _query_leads(conn, _is_admin(conn), request.args.get('status'),
                             request.args.get('priority'), request.args.get('search'))
        conn.close()
        return jsonify({'leads': leads})
    except Exception as e:
        log.exception('Error fetching leads')
        return jsonify({'error': str(e)}), 500


@app.route('/api/leads', methods=['POST'])
@login_required
def create_lead():
    data, err = require_json()
    if err:
        return err
    company_name = (data.get('companyName') or '').strip() if isinstance(data.get('companyName'), str) else ''
    if not company_name:
        return jsonify({'error': 'Company name is required'}), 400
    lat, lat_err = validate_number(data.get('lat'), 'lat', -90, 90)
    lng, lng_err = validate_number(data.get('lng'), 'lng', -180, 180)
    if lat_err or lng_err:
        return jsonify({'error': lat_err or lng_err}), 400
    try:
        conn = get_crm_db()
        if not _user_row(conn, g.uid):
            conn.close()
            return jsonify({'error': 'User not found'}), 404
        lead_id = uuid.uuid4().hex
        now = _now()
        db_execute_with_retry(conn, '''
            INSERT INTO leads (id, owner_id, company_name, address, phone, website, nip, status, priority,
                notes, key_people, revenue, employees, socials, description, technologies, lat, lng,
                created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            lead_id, g.uid, company_name,
            data.get('address') or None,
            data.get('phone') or None,
            data.get('website') or None,
            data.get('nip') or None,
            data.get('status') or 'new',
            data.get('priority') or 'medium',
            data.get('notes') or None,
            json.dumps(data.get('keyPeople') or []),
            data.get('revenue') or None,
            data.get('employees') or None,
            json.dumps(data['socials']) if data.get('socials') else None,
            data.get('description') or None,
            json.dumps(data.get('technologies') or []),
            lat, lng, now, now,
        ))
        conn.commit()
        lead = _lead_dict(conn.execute('SELECT * FROM leads WHERE id = ?', (lead_id,)).fetchone())
        conn.close()
        return jsonify({'lead': lead}), 201
    except Exception as e:
        log.exception('Error creating lead')
        return jsonify({'error': str(e)}), 500


@app.route('/api/leads/stats', methods=['GET'])
@login_required
def lead_stats():
    try:
        conn = get_crm_db()
        if not _user_row(conn, g.uid):
            conn.close()
            return jsonify({'error': 'User not found'}), 404
        if _is_admin(conn):
            row = conn.execute('''
                SELECT COUNT(*) AS total, SUM(CASE WHEN scheduled_date IS NULL THEN 1 ELSE 0 END) AS unscheduled
                FROM leads
            ''').fetchone()
        else:
            row = conn.execute('''
                SELECT COUNT(*) AS total, SUM(CASE WHEN scheduled_date IS NULL THEN 1 ELSE 0 END) AS unscheduled
                FROM leads WHERE owner_id = ?
            ''', (g.uid,)).fetchone()
        conn.close()
        return jsonify({'total': row['total'] or 0, 'unscheduled': row['unscheduled'] or 0})
    except Exception as e:
        log.exception('Error fetching lead stats')
        return jsonify({'error': str(e)}), 500


@app.route('/api/leads/export', methods=['GET'])
@login_required
def export_leads():
    try:
        conn = get_crm_db()
        leads = _query_leads(conn, _is_admin(conn))
        conn.close()

        # header row plain, data cells always quoted
        out = io.StringIO()
        out.write(','.join(LEAD_EXPORT_HEADERS) + '\n')
        writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator='\n')
        for l in leads:
            writer.writerow([
                l['companyName'] or '', l['address'] or '', l['phone'] or '', l['website'] or '',
                l['nip'] or '', l['status'] or '', l['priority'] or '', l['notes'] or '',
                '; '.join(str(p) for p in l['keyPeople']), l['revenue'] or '', l['employees'] or '',
                l['description'] or '', '; '.join(str(t) for t in l['technologies']),
                l['createdAt'] or '', l['updatedAt'] or '',
            ])
        filename = f"leads_{date.today().isoformat()}.csv"
        return Response(out.getvalue(), mimetype='text/csv', headers={
            'Content-Disposition': f'attachment; filename="{filename}"',
        })
    except Exception as e:
        log.exception('Error exporting leads')
        return jsonify({'error': str(e)}), 500


@app.route('/api/leads/<lead_id>', methods=['GET'])
@login_required
def get_lead(lead_id):
    try:
        conn = get_crm_db()
        if not _user_row(conn, g.uid):
            conn.close()
            return jsonify({'error': 'User not found'}), 404
        row = _find_lead(conn, lead_id, _is_admin(conn))
        if not row:
            conn.close()
            return jsonify({'error': 'Lead not found'}), 404
        owner = _user_row(conn, row['owner_id'])
        conn.close()
        lead = _lead_dict(row)
        lead['user'] = {'name': owner['name'] if owner else None, 'email': owner['email'] if owner else None}
        return jsonify({'lead': lead})
    except Exception as e:
        log.exception('Error fetching lead')
        return jsonify({'error': str(e)}), 500


@app.route('/api/leads/<lead_id>', methods=['PATCH'])
@login_required
def update_lead(lead_id):
    data, err = require_json()
    if err:
        return err
    try:
        conn = get_crm_db()
        if not _user_row(conn, g.uid):
            conn.close()
            return jsonify({'error': 'User not found'}), 404
        row = _find_lead(conn, lead_id, _is_admin(conn))
        if not row:
            conn.close()
            return jsonify({'error': 'Lead not found'}), 404

        # SECURITY: column names come from these hardcoded maps, never from user input
        updates = {}
        for key, column in (('status', 'status'), ('priority', 'priority'), ('companyName', 'company_name')):
            if data.get(key):
                updates[column] = data[key]
        for key, column in (('notes', 'notes'), ('address', 'address'), ('phone', 'phone'),
                            ('website', 'website'), ('nip', 'nip'), ('scheduledDate', 'scheduled_date')):
            if key in data:
                updates[column] = data[key]
        for key, lo, hi in (('lat', -90, 90), ('lng', -180, 180)):
            if key in data:
                value, num_err = validate_number(data[key], key, lo, hi)
                if num_err:
                    conn.close()
                    return jsonify({'error': num_err}), 400
                updates[key] = value
        updates['updated_at'] = _now()

        set_clause = ', '.join(f'{col} = ?' for col in updates)
        conn.execute(f'UPDATE leads SET {set_clause} WHERE id = ?', list(updates.values()) + [lead_id])
        conn.commit()
        lead = _lead_dict(conn.execute('SELECT * FROM leads WHERE id = ?', (lead_id,)).fetchone())
        conn.close()
        return jsonify({'lead': lead})
    except Exception as e:
        log.exception('Error updating lead')
        return jsonify({'error': str(e)}), 500


@app.route('/api/leads/<lead_id>', methods=['DELETE'])
@login_required
def delete_lead(lead_id):
    try:
        conn = get_crm_db()
        if not _user_row(conn, g.uid):
            conn.close()
            return jsonify({'error': 'User not found'}), 404
        row = _find_lead(conn, lead_id, _is_admin(conn))
        if not row:
            conn.close()
            return jsonify({'error': 'Lead not found'}), 404
        conn.execute('DELETE FROM leads WHERE id = ?', (lead_id,))
        conn.commit()
        conn.close()
        return jsonify({'success': True})
    except Exception as e:
        log.exception('Error deleting lead')
        return jsonify({'error': str(e)}), 500


# ==================== PROSPECTING & PLANNER ====================

def _flush_usage(tracker):
    conn = get_crm_db()
    tracker.flush(conn, g.uid)
    conn.close()


@app.route('/api/lead-profiles', methods=['GET'])
def list_lead_profiles():
    return jsonify(list(LEAD_PROFILES.values()))


@app.route('/api/search-radius', methods=['GET'])
@login_required
def api_search_radius():
    address = request.args.get('address')
    if not address:
        return jsonify({'error': 'Address is required'}), 400
    radius, err = validate_number(request.args.get('radius', 20000), 'radius', min_val=100, max_val=50000)
    if err:
        return jsonify({'error': err}), 400
    profiles = parse_profile_ids(request.args.get('profiles') or request.args.get('profile'))
    tracker = UsageTracker('google_maps')
    try:
        return jsonify(search_radius(address, profiles, int(radius), track=tracker))
    except ConfigurationError as e:
        log.error('Radius search misconfigured: %s', e)
        return jsonify({'error': 'Server configuration error'}), 500
    except Exception as e:
        log.exception('Radius search failed')
        return jsonify({'error': str(e)}), 500
    finally:
        _flush_usage(tracker)


@app.route('/api/search-route', methods=['GET'])
@login_required
def api_search_route():
    origin = request.args.get('origin')
    destination = request.args.get('destination')
    if not origin or not destination:
        return jsonify({'error': 'Origin and destination required'}), 400
    profiles = parse_profile_ids(request.args.get('profiles') or request.args.get('profile'))
    tracker = UsageTracker('google_maps')
    try:
        return jsonify(search_route(origin, destination, profiles, track=tracker))
    except ConfigurationError as e:
        log.error('Route search misconfigured: %s', e)
        return jsonify({'error': 'Server configuration error'}), 500
    except Exception as e:
        log.exception('Route search failed')
        return jsonify({'error': str(e)}), 500
    finally:
        _flush_usage(tracker)


@app.route('/api/place-details', methods=['GET'])
@login_required
def api_place_details():
    place_id = request.args.get('placeId')
    if not place_id:
        return jsonify({'error': 'Place ID is required'}), 400
    tracker = UsageTracker('google_maps')
    try:
        return jsonify(opening_details(place_id, track=tracker))
    except ConfigurationError:
        return jsonify({'error': 'Server configuration error'}), 500
    except UpstreamError as e:
        return jsonify({'error': str(e) or 'Failed to fetch details'}), e.status or 502
    except Exception as e:
        log.exception('Place details failed')
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        _flush_usage(tracker)


@app.route('/api/planner/settings', methods=['GET'])
@login_required
def get_planner_settings():
    day = request.args.get('date')
    if not day:
        return jsonify({'error': 'Date parameter is required'}), 400
    try:
        conn = get_crm_db()
        row = conn.execute('SELECT * FROM planner_settings WHERE user_id = ? AND date = ?',
                           (g.uid, day)).fetchone()
        conn.close()
        if not row:
            return jsonify({'start': DEFAULT_PLANNER_POINT, 'end': DEFAULT_PLANNER_POINT, 'order': []})
        return jsonify({
            'start': row['start_point'], 'end': row['end_point'],
            'order': json.loads(row['lead_order'] or '[]'), 'updatedAt': row['updated_at'],
        })
    except Exception as e:
        log.exception('Error reading planner settings')
        return jsonify({'error': str(e)}), 500


@app.route('/api/planner/settings', methods=['POST'])
@login_required
def save_planner_settings():
    data, err = require_json()
    if err:
        return err
    day = data.get('date')
    if not day:
        return jsonify({'error': 'Date is required'}), 400
    order = data.get('order') or []
    if not isinstance(order, list):
        return jsonify({'error': 'order must be a list'}), 400
    try:
        saved = {
            'start': data.get('start') or DEFAULT_PLANNER_POINT,
            'end': data.get('end') or DEFAULT_PLANNER_POINT,
            'order': order,
            'updatedAt': _now(),
        }
        conn = get_crm_db()
        conn.execute('''
            INSERT INTO planner_settings (user_id, date, start_point, end_point, lead_order, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, date) DO UPDATE SET
                start_point = excluded.start_point,
                end_point = excluded.end_point,
                lead_order = excluded.lead_order,
                updated_at = excluded.updated_at
        ''', (g.uid, day, saved['start'], saved['end'], json.dumps(order), saved['updatedAt']))
        conn.commit()
        conn.close()
        return jsonify({'success': True, 'data': saved})
    except Exception as e:
        log.exception('Error saving planner settings')
        return jsonify({'error': str(e)}), 500


# ==================== BUSINESS CARDS ====================

@app.route('/api/scan-card', methods=['POST'])
@login_required
def scan_card():
    data = request.get_json(silent=True) or {}
    image = data.get('image')
    language = data.get('language') or 'pl'
    if not image or not isinstance(image, str):
        return jsonify({'error': 'No image provided'}), 400
    try:
        full_text = detect_text(image, language)
        if not full_text:
            return jsonify({'error': 'No text detected'}), 422
        return jsonify({'success': True, 'data': parse_business_card(full_text), 'raw': full_text})
    except ConfigurationError as e:
        log.error('Card scan misconfigured: %s', e)
        return jsonify({'error': 'Server configuration error'}), 500
    except Exception as e:
        log.exception('Card scan failed')
        return jsonify({'error': str(e) or 'Internal Server Error'}), 500


@app.route('/api/parse-text', methods=['POST'])
@admin_required
def parse_text():
    data = request.get_json(silent=True) or {}
    text = data.get('text')
    language = data.get('language', 'pl')
    if not text or not isinstance(text, str):
        return jsonify({'error': 'No text provided'}), 400
    if len(text) > MAX_PARSE_TEXT_CHARS:
        return jsonify({'error': 'Text too long (max 10k chars)'}), 413
    if language not in ('pl', 'en'):
        return jsonify({'error': 'Invalid language'}), 400
    return jsonify({'success': True, 'data': parse_business_card(text)})


@app.route('/api/vcard', methods=['POST'])
@login_required
def vcard():
    data, err = require_json()
    if err:
        return err
    for field in VCARD_FIELDS:
        value = data.get(field)
        if field == 'phone' and isinstance(value, int) and not isinstance(value, bool):
            continue
        if value is not None and not isinstance(value, str):
            return jsonify({'error': f'{field} must be a string'}), 400
    return Response(generate_vcard(data), mimetype='text/vcard', headers={
        'Content-Disposition': 'attachment; filename="contact.vcf"',
    })


# ==================== COMPANY REGISTRY (GUS) ====================

_gus_client = None


def get_gus_client():
    global _gus_client
    if _gus_client is None:
        _gus_client = GusClient()
    return _gus_client


@app.route('/api/gus', methods=['GET'])
@login_required
def gus_lookup():
    nip = re.sub(r'\D', '', request.args.get('nip') or '')
    name = (request.args.get('name') or '').strip()
    if not nip and not name:
        return jsonify({'error': 'NIP parameter is required'}), 400
    try:
        client = get_gus_client()
        if nip:
            company = client.search_by_nip(nip)
        else:
            company = client.search_by_name(name, request.args.get('city'))
        conn = get_crm_db()
        log_usage(conn, g.uid, 'gus', 'search', 1, {'nip': nip, 'name': name})
        conn.close()
        if not company:
            return jsonify({'error': 'Company not found'}), 404
        return jsonify(company)
    except GusError as e:
        log.error('GUS lookup failed: %s', e)
        get_gus_client().reset_session()
        return jsonify({'error': 'Internal Server Error'}), 500
    except Exception as e:
        log.exception('GUS lookup failed')
        return jsonify({'error': 'Internal Server Error'}), 500


# ==================== COMPANY RESEARCH ====================

@app.route('/api/enrich-company', methods=['POST'])
@admin_required
def api_enrich_company():
    data, err = require_json()
    if err:
        return err
    company = data.get('company')
    website = data.get('website')
    raw_text = data.get('rawText')
    for value in (company, website, raw_text):
        if value is not None and not isinstance(value, str):
            return jsonify({'error': 'company, website and rawText must be strings'}), 400
    if not company and not website and not raw_text:
        return jsonify({'error': 'Provide company, website or rawText'}), 400

    request_id = uuid.uuid4().hex
    log.info('Enrich %s start: company=%s website=%s', request_id, company, website)
    try:
        enrichment = enrich_company(company, website, raw_text)
        conn = get_crm_db()
        log_usage(conn, g.uid, 'vertex-gemini', 'enrich_company', 1, {'company': company})
        conn.close()
        log.info('Enrich %s done', request_id)
        return jsonify({'success': True, 'enrichment': enrichment})
    except ConfigurationError as e:
        log.error('Enrich misconfigured: %s', e)
        return jsonify({'error': 'Server configuration error'}), 500
    except Exception as e:
        log.exception('Enrich %s failed', request_id)
        return jsonify({'error': str(e) or 'Internal error'}), 500


def _store_intelligence(conn, lead_id, fields):
    """Write client-intelligence fields into a lead; website only when the lead has none."""
    row = _find_lead(conn, lead_id, _is_admin(conn))
    if not row:
        return None
    updates = {
        'key_people': json.dumps(fields.get('keyPeople') or []),
        'revenue': fields.get('revenue'),
        'employees': fields.get('employees'),
        'socials': json.dumps(fields.get('socials') or {}),
        'description': fields.get('description'),
        'technologies': json.dumps(fields.get('technologies') or []),
        'updated_at': _now(),
    }
    if not row['website'] and fields.get('website'):
        updates['website'] = fields['website']
    set_clause = ', '.join(f'{col} = ?' for col in updates)
    conn.execute(f'UPDATE leads SET {set_clause} WHERE id = ?', list(updates.values()) + [lead_id])
    conn.commit()
    return _lead_dict(conn.execute('SELECT * FROM leads WHERE id = ?', (lead_id,)).fetchone())


@app.route('/api/client-intelligence', methods=['POST'])
@login_required
def api_client_intelligence():
    data, err = require_json()
    if err:
        return err
    nip, name, city, website = (data.get(k) for k in ('nip', 'name', 'city', 'website'))
    for value in (nip, name, city, website):
        if value is not None and not isinstance(value, str):
            return jsonify({'error': 'nip, name, city and website must be strings'}), 400
    if not clean_nip(nip) and not (name or '').strip():
        return jsonify({'error': 'Provide either "nip" or "name".'}), 400

    gus_usage = UsageTracker('gus')
    gemini_usage = UsageTracker('gemini')
    try:
        result = client_intelligence(get_gus_client(), nip, name, city, website,
                                     track_gus=gus_usage, track_gemini=gemini_usage)
        result['leadFields'] = lead_fields(result['data']['intelligence'])
        if data.get('leadId'):
            conn = get_crm_db()
            try:
                lead = _store_intelligence(conn, data['leadId'], result['leadFields'])
            finally:
                conn.close()
            if lead is None:
                return jsonify({'error': 'Lead not found'}), 404
            result['lead'] = lead
        return jsonify(result)
    except GusError as e:
        log.error('Client intelligence GUS failure: %s', e)
        get_gus_client().reset_session()
        return jsonify({'error': str(e)}), 500
    except ConfigurationError as e:
        log.error('Client intelligence misconfigured: %s', e)
        return jsonify({'error': 'Server configuration error'}), 500
    except Exception as e:
        log.exception('Client intelligence failed')
        return jsonify({'error': str(e) or 'Server Error'}), 500
    finally:
        conn = get_crm_db()
        details = {'query': clean_nip(nip) or name}
        gus_usage.flush(conn, g.uid, details)
        gemini_usage.flush(conn, g.uid, details)
        conn.close()


# ==================== AI ASSISTANT ====================

def _session_dict(row):
    return {
        'id': row['id'], 'userId': row['user_id'], 'title': row['title'],
        'messages': json.loads(row['messages'] or '[]'),
        'createdAt': row['created_at'], 'updatedAt': row['updated_at'],
    }


@app.route('/api/ai-assistant', methods=['POST'])
def ai_assistant():
    token = _get_token_from_request()
    if not token:
        return jsonify({'error': 'Unauthorized: No token'}), 401
    payload = _decode_token(token)
    if not payload:
        return jsonify({'error': 'Session expired'}), 401
    _set_identity(payload)

    data = request.get_json(silent=True) or {}
    messages = data.get('messages')
    session_id = data.get('sessionId')
    invalid = validate_messages(messages)
    if invalid:
        return jsonify({'error': invalid}), 400
    last_content = sanitize_text(messages[-1]['content'])

    try:
        conn = get_crm_db()
        if session_id:
            session = conn.execute('SELECT * FROM chat_sessions WHERE id = ?', (session_id,)).fetchone()
            if not session:
                conn.close()
                return jsonify({'error': 'Session not found'}), 404
            if session['user_id'] != g.uid:
                conn.close()
                return jsonify({'error': 'Forbidden'}), 403
        if not _is_admin(conn) and not has_remaining_quota(conn, g.uid, AI_MONTHLY_LIMIT):
            conn.close()
            return jsonify({'error': 'Monthly AI quota exceeded'}), 429
        conn.close()

        log.info('Assistant message length %d for %s', len(last_content), g.uid)
        response_text = chat_with_fallback(messages)

        conn = get_crm_db()
        now = _now()
        new_messages = [{'role': 'user', 'content': last_content},
                        {'role': 'assistant', 'content': response_text}]
        title = ''
        if session_id:
            stored = json.loads(conn.execute('SELECT messages FROM chat_sessions WHERE id = ?',
                                             (session_id,)).fetchone()['messages'] or '[]')
            conn.execute('UPDATE chat_sessions SET messages = ?, updated_at = ? WHERE id = ?',
                         (json.dumps(stored + new_messages), now, session_id))
        else:
            session_id = uuid.uuid4().hex
            title = session_title(last_content)
            conn.execute('''
                INSERT INTO chat_sessions (id, user_id, title, messages, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (session_id, g.uid, title, json.dumps(new_messages), now, now))
        conn.commit()
        log_usage(conn, g.uid, 'gemini', 'admin_chat', 1, {'length': len(last_content)})
        conn.close()

        result = {'response': response_text, 'sessionId': session_id}
        if title:
            result['title'] = title
        return jsonify(result)
    except AssistantUnavailable as e:
        log.error('%s', e)
        return jsonify({'error': str(e)}), 500
    except Exception as e:
        log.exception('Assistant request failed')
        return jsonify({'error': str(e) or 'Server Error'}), 500


@app.route('/api/ai-assistant/sessions', methods=['GET'])
@login_required
def list_chat_sessions():
    try:
        conn = get_crm_db()
        rows = conn.execute('SELECT * FROM chat_sessions WHERE user_id = ? ORDER BY updated_at DESC',
                            (g.uid,)).fetchall()
        conn.close()
        return jsonify([_session_dict(r) for r in rows])
    except Exception as e:
        log.exception('Error listing sessions')
        return jsonify({'error': str(e)}), 500


@app.route('/api/ai-assistant/sessions/<session_id>', methods=['GET'])
@login_required
def get_chat_session(session_id):
    conn = get_crm_db()
    row = conn.execute('SELECT * FROM chat_sessions WHERE id = ?', (session_id,)).fetchone()
    conn.close()
    if not row:
        return jsonify({'error': 'Session not found'}), 404
    if row['user_id'] != g.uid:
        return jsonify({'error': 'Forbidden'}), 403
    return jsonify(_session_dict(row))


@app.route('/api/ai-assistant/sessions/<session_id>', methods=['DELETE'])
@login_required
def delete_chat_session(session_id):
    conn = get_crm_db()
    row = conn.execute('SELECT user_id FROM chat_sessions WHERE id = ?', (session_id,)).fetchone()
    if not row:
        conn.close()
        return jsonify({'success': True})
    if row['user_id'] != g.uid:
        conn.close()
        return jsonify({'error': 'Forbidden'}), 403
    conn.execute('DELETE FROM chat_sessions WHERE id = ?', (session_id,))
    conn.commit()
    conn.close()
    return jsonify({'success': True})


@app.route('/api/admin/ai-assistant', methods=['POST'])
@admin_required
def admin_ai_assistant():
    data = request.get_json(silent=True) or {}
    messages = data.get('messages')
    invalid = validate_messages(messages)
    if invalid:
        return jsonify({'error': invalid}), 400
    try:
        response_text = consulting_chat(messages)
        conn = get_crm_db()
        log_usage(conn, g.uid, 'gemini', 'admin_chat', 1, {'length': len(messages[-1]['content'])})
        conn.close()
        return jsonify({'response': response_text})
    except Exception as e:
        log.exception('Admin assistant failed')
        return jsonify({'error': str(e) or 'Server Error'}), 500


# ==================== COSTS ====================

@app.route('/api/admin/costs', methods=['GET'])
@admin_required
def admin_costs():
    date_from = request.args.get('from')
    date_to = request.args.get('to')
    for value in (date_from, date_to):
        if value and not _valid_date(value):
            return jsonify({'error': 'Dates must be YYYY-MM-DD'}), 400
    try:
        conn = get_crm_db()
        report = cost_report(conn, date_from, date_to)
        conn.close()
        return jsonify(report)
    except Exception as e:
        log.exception('Cost report failed')
        return jsonify({'error': str(e)}), 500


# ==================== EMAIL ====================

@app.route('/api/test-email', methods=['POST'])
@admin_required
def test_email():
    data = request.get_json(silent=True) or {}
    to, subject, text = data.get('to'), data.get('subject'), data.get('text')
    if not to or not subject or not text:
        return jsonify({'error': 'Missing required fields: to, subject, text'}), 400
    try:
        message_id = send_email(to, subject, text)
        return jsonify({'success': True, 'result': {'messageId': message_id}})
    except Exception as e:
        log.exception('Email sending error')
        return jsonify({'error': 'Failed to send email', 'details': str(e)}), 500


# ==================== HEALTH ====================

@app.route('/health')
def health():
    try:
        market = get_market_db()
        price_count = market.execute('SELECT COUNT(*) FROM energy_prices').fetchone()[0]
        futures_count = market.execute('SELECT COUNT(*) FROM futures_data').fetchone()[0]
        market.close()
        crm = get_crm_db()
        user_count = crm.execute('SELECT COUNT(*) FROM users').fetchone()[0]
        crm.close()
        return jsonify({'status': 'ok', 'energy_prices': price_count, 'futures': futures_count,
                        'users': user_count})
    except Exception as e:
        return jsonify({'status': 'error', 'error': str(e)}), 500


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=False)
