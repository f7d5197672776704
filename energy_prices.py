"""
RDN (day-ahead market) hourly energy prices.
CSV decoding, TGE column matching, import into the market DB, and the
daily / hourly / weekly aggregates the price dashboards read.
"""
import calendar
import csv
import io
import logging
import math
import re
from collections import defaultdict
from datetime import date, datetime

import openpyxl

log = logging.getLogger('salesapp.energy_prices')

MAX_SKIPPED_SAMPLES = 5

# Polish day names indexed like JS getDay(): 0 = Sunday
DAY_NAMES = ['Niedziela', 'Poniedziałek', 'Wtorek', 'Środa', 'Czwartek', 'Piątek', 'Sobota']
WEEK_ORDER = [1, 2, 3, 4, 5, 6, 0]

QUARTER_MONTHS = {
    'Q1': (1, 3),
    'Q2': (4, 6),
    'Q3': (7, 9),
    'Q4': (10, 12),
}

PRICE_BAND_LOW = 250
PRICE_BAND_HIGH = 300

_LEADING_NON_WORD = re.compile(r'^\W+')


# ── CSV decoding ────────────────────────────────────────────────

def decode_csv_bytes(raw):
    """Decode an uploaded CSV: UTF-8 when BOM-marked or valid, else Windows-1250 (TGE exports)."""
    if raw.startswith(b'\xef\xbb\xbf'):
        text = raw.decode('utf-8-sig')
    else:
        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError:
            text = raw.decode('cp1250', errors='replace')
    # BOM decoded with the wrong codepage
    if text.startswith('ď»ż') or text.startswith('ï»¿'):
        text = text[3:]
    return text.strip()


def clean_header(name):
    return _LEADING_NON_WORD.sub('', (name or '').strip())


def read_csv_rows(text):
    """Parse CSV text into dicts. Delimiter is sniffed from ; , and tab."""
    if not text:
        return []
    sample = text[:4096]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=';,\t')
        delimiter = dialect.delimiter
    except csv.Error:
        first_line = sample.splitlines()[0] if sample else ''
        delimiter = max(';,\t', key=first_line.count)

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    header = None
    rows = []
    for values in reader:
        if not values or all(not v.strip() for v in values):
            continue
        if header is None:
            header = [clean_header(h) for h in values]
            continue
        row = {}
        for i, key in enumerate(header):
            if not key:
                continue
            row[key] = values[i].strip() if i < len(values) else ''
        rows.append(row)
    return rows


def _xlsx_cell(value):
    if value is None:
        return ''
    if isinstance(value, (datetime, date)):
        return value.strftime('%Y-%m-%d')
    if isinstance(value, str):
        return value.strip()
    return value


def read_xlsx_rows(raw):
    """
    First worksheet of an .xlsx upload as dicts keyed by the header row.
    Dates come back as YYYY-MM-DD strings, numbers stay numeric.
    """
    wb = openpyxl.load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        header = None
        rows = []
        for values in ws.iter_rows(values_only=True):
            cells = [_xlsx_cell(v) for v in values]
            if all(c == '' for c in cells):
                continue
            if header is None:
                header = [clean_header(str(c)) for c in cells]
                continue
            row = {}
            for i, key in enumerate(header):
                if not key:
                    continue
                row[key] = cells[i] if i < len(cells) else ''
            rows.append(row)
        return rows
    finally:
        wb.close()


def read_upload_rows(filename, raw):
    """Rows of an uploaded price file: .xlsx workbooks via openpyxl, anything else as CSV."""
    if (filename or '').lower().endswith('.xlsx'):
        return read_xlsx_rows(raw)
    return read_csv_rows(decode_csv_bytes(raw))


# ── Value normalization ─────────────────────────────────────────

def parse_polish_number(value):
    """'2 500,50' -> 2500.5. Unparseable and non-finite values (NaN, inf) become 0."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value if math.isfinite(value) else 0
    if not value:
        return 0
    clean = str(value).strip()
    if ',' in clean:
        clean = re.sub(r'\s', '', clean).replace(',', '.', 1)
    try:
        number = float(clean)
    except ValueError:
        return 0
    return number if math.isfinite(number) else 0


def normalize_date(value):
    """Return YYYY-MM-DD for DD.MM.YYYY and M/D/YYYY inputs; other formats pass through."""
    date_part = str(value).strip().split(' ')[0]
    if '.' in date_part:
        parts = date_part.split('.')
        if len(parts) == 3:
            return f"{parts[2]}-{parts[1].zfill(2)}-{parts[0].zfill(2)}"
    if '/' in date_part:
        parts = date_part.split('/')
        if len(parts) == 3:
            return f"{parts[2]}-{parts[0].zfill(2)}-{parts[1].zfill(2)}"
    return date_part


def find_value(row, key_part):
    """Fuzzy column lookup: exact (case-insensitive), TGE hour column, then substring."""
    wanted = key_part.lower().strip()
    keys = list(row.keys())
    for k in keys:
        if k.lower().strip() == wanted:
            return row[k]
    if key_part in ('godzinanazwa', 'godzina'):
        for k in keys:
            if 'tge_rdn_kontrakty_godzinanazwa' in k.lower():
                return row[k]
    for k in keys:
        if wanted in k.lower():
            return row[k]
    return None


def _first_value(row, *key_parts):
    for part in key_parts:
        value = find_value(row, part)
        if value not in (None, ''):
            return value
    return None


def _parse_hour(value):
    if isinstance(value, (int, float)):
        return int(value)
    m = re.match(r'\s*(-?\d+)', str(value))
    return int(m.group(1)) if m else None


# ── Import ──────────────────────────────────────────────────────

def import_energy_prices(conn, rows, created_by):
    """
    Import parsed CSV rows into energy_prices.

    Every stored tick for a date present in the file is deleted first, so
    re-importing a day replaces it completely. Deletes and inserts share one
    transaction: a failing row rolls the whole file back and leaves the
    stored days as they were. Returns a summary dict.
    """
    unique_dates = set()
    for row in rows:
        date_val = _first_value(row, 'datadostawy', 'data')
        if date_val:
            unique_dates.add(normalize_date(date_val))

    processed = 0
    skipped_rows = []

    def skip(row_number, reason, row):
        if len(skipped_rows) < MAX_SKIPPED_SAMPLES:
            skipped_rows.append({'row': row_number, 'reason': reason, 'data': row})

    now = datetime.now().isoformat(timespec='seconds')
    try:
        deleted = 0
        for d in sorted(unique_dates):
            if not d or len(d) != 10:
                continue
            deleted += conn.execute('DELETE FROM energy_prices WHERE date = ?', (d,)).rowcount

        for i, row in enumerate(rows):
            row_number = i + 1
            date_val = _first_value(row, 'datadostawy', 'data')
            hour_val = _first_value(row, 'godzinanazwa', 'h_num', 'godzina')
            price_val = _first_value(row, 'kursfixing1', 'average of cena', 'cena')
            volume_val = _first_value(row, 'wolumenfixing1', 'wolumen', 'volume')

            if not date_val:
                skip(row_number, 'Missing Data field', row)
                continue
            if not hour_val:
                skip(row_number, 'Missing h_num field', row)
                continue
            if price_val is None:
                skip(row_number, 'Missing Price field', row)
                continue

            hour = _parse_hour(hour_val)
            if hour is None or hour < 1 or hour > 25:
                skip(row_number, f'Invalid Hour: {hour}', row)
                continue

            conn.execute('''
                INSERT INTO energy_prices (id, date, hour, price, volume, created_at, created_by)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(date, hour) DO UPDATE SET
                    price = excluded.price,
                    volume = excluded.volume,
                    created_at = excluded.created_at,
                    created_by = excluded.created_by
            ''', (
                f"{normalize_date(date_val)}-{hour:02d}",
                normalize_date(date_val),
                hour,
                parse_polish_number(price_val),
                parse_polish_number(volume_val) if volume_val else 0,
                now,
                created_by,
            ))
            processed += 1

        conn.commit()
    except Exception:
        conn.rollback()
        log.exception('Energy price import by %s rolled back', created_by)
        raise

    if deleted:
        log.info('Replaced %d existing price ticks', deleted)
    log.info('Energy price import by %s: %d processed, %d skipped',
             created_by, processed, len(rows) - processed)
    return {
        'processedCount': processed,
        'skippedCount': len(rows) - processed,
        'skippedRows': skipped_rows,
        'errors': [],
    }


# ── Aggregation ─────────────────────────────────────────────────

def _r2(value):
    return round(value * 100) / 100


def _js_weekday(date_str):
    """0 = Sunday .. 6 = Saturday."""
    return (date.fromisoformat(date_str).weekday() + 1) % 7


def add_trend_line(points, key='price'):
    """Least-squares line over the point index; adds a 'trend' value to each point."""
    n = len(points)
    if n < 2:
        return points
    sum_x = sum_y = sum_xy = sum_xx = 0.0
    for x, p in enumerate(points):
        y = p[key]
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    return [dict(p, trend=slope * i + intercept) for i, p in enumerate(points)]


def summarize_prices(ticks, days=None, heat_map=False):
    """
    Aggregate price ticks (dicts with date/hour/price) into:
    history (daily averages), hourlyProfile, weeklyProfile and overallAverage.
    """
    daily = defaultdict(lambda: [0.0, 0])
    hourly = defaultdict(lambda: [0.0, 0])
    weekly = defaultdict(lambda: [0.0, 0])
    by_date = defaultdict(list)
    total_sum = 0.0
    total_count = 0

    for t in ticks:
        d, hour, price = t['date'], t['hour'], t['price']
        total_sum += price
        total_count += 1
        daily[d][0] += price
        daily[d][1] += 1
        hourly[hour][0] += price
        hourly[hour][1] += 1
        try:
            dow = _js_weekday(d)
        except ValueError:
            dow = None
        if dow is not None and 1 <= hour <= 24:
            weekly[(dow, hour)][0] += price
            weekly[(dow, hour)][1] += 1
        by_date[d].append((hour, price))

    history = [
        {'date': d, 'avgPrice': _r2(s / c)}
        for d, (s, c) in sorted(daily.items())
    ]
    if days:
        history = history[-days:]

    hourly_profile = [
        {'hour': h, 'price': _r2(s / c)}
        for h, (s, c) in sorted(hourly.items())
    ]

    weekly_profile = []
    for dow in WEEK_ORDER:
        prices = []
        for hour in range(1, 25):
            s, c = weekly.get((dow, hour), (0.0, 0))
            prices.append(_r2(s / c) if c else 0)
        weekly_profile.append({'dayOfWeek': dow, 'name': DAY_NAMES[dow], 'prices': prices})

    result = {
        'history': add_trend_line(history, key='avgPrice'),
        'hourlyProfile': hourly_profile,
        'weeklyProfile': weekly_profile,
        'overallAverage': _r2(total_sum / total_count) if total_count else 0,
    }
    if heat_map:
        rows = [
            {'date': d, 'prices': [p for _, p in sorted(items)]}
            for d, items in sorted(by_date.items())
        ]
        result['heatMap'] = rows[-days:] if days else rows
    return result


def quarter_date_ranges(quarters, year):
    """['Q1', 'Q3'] -> [('YYYY-01-01', 'YYYY-03-31'), ...]; unknown codes are ignored."""
    ranges = []
    for q in quarters:
        months = QUARTER_MONTHS.get(q.strip().upper())
        if not months:
            continue
        start_month, end_month = months
        last_day = calendar.monthrange(year, end_month)[1]
        ranges.append((f"{year}-{start_month:02d}-01", f"{year}-{end_month:02d}-{last_day:02d}"))
    return ranges


def price_band(price):
    if price < PRICE_BAND_LOW:
        return 'green'
    if price < PRICE_BAND_HIGH:
        return 'yellow'
    return 'red'


def format_price(price):
    return f"{price:.2f} PLN/MWh"


def daily_summary(ticks):
    """Min / max / average for one day's hourly prices; None when empty."""
    if not ticks:
        return None
    hourly = sorted(({'hour': t['hour'], 'price': t['price']} for t in ticks), key=lambda p: p['hour'])
    prices = [p['price'] for p in hourly]
    min_price, max_price = min(prices), max(prices)
    avg = sum(prices) / len(prices)
    min_hour = next(p['hour'] for p in hourly if p['price'] == min_price)
    max_hour = next(p['hour'] for p in hourly if p['price'] == max_price)
    return {
        'date': ticks[0]['date'],
        'hourlyPrices': [dict(p, band=price_band(p['price'])) for p in hourly],
        'statistics': {
            'minPrice': min_price,
            'maxPrice': max_price,
            'avgPrice': _r2(avg),
            'minHour': min_hour,
            'maxHour': max_hour,
            'savings': _r2(max_price - min_price),
            'label': format_price(avg),
        },
    }
