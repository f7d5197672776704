"""
TGE power futures (BASE / PEAK5 contracts).
CSV import into futures_data and the indicators behind the futures dashboard:
OHLC history, forward curve, ticker, RSI / ATR / SMA50 trend and calendar spread.
"""
import logging
import re
from datetime import date, datetime

from energy_prices import read_csv_rows, parse_polish_number

log = logging.getLogger('salesapp.futures')

IMPORT_BATCH_SIZE = 250
RSI_PERIOD = 14
ATR_PERIOD = 14
SMA_TREND_PERIOD = 50
CURVE_SMA_DOCS = 15
TREND_THRESHOLD_PCT = 5

DATE_FORMATS = ['%d.%m.%Y', '%m/%d/%Y', '%Y-%m-%d']

# CSV column -> futures_data column
CSV_COLUMNS = {
    'tge_rtpe_KursMax': 'max_price',
    'tge_rtpe_KursMin': 'min_price',
    'tge_rtpe_KursRozliczeniowy': 'dkr',
    'tge_rtpe_LiczbaKontraktow': 'contracts_count',
    'tge_rtpe_LiczbaOtwartychPozycji': 'open_interest',
    'tge_rtpe_LiczbaTransakcji': 'transactions_count',
    'tge_rtpe_WartoscObrotu': 'turnover_value',
    'tge_rtpe_WolumenObrotu': 'volume',
}

PL_MONTHS_SHORT = ['sty', 'lut', 'mar', 'kwi', 'maj', 'cze', 'lip', 'sie', 'wrz', 'paź', 'lis', 'gru']

RSI_OVERBOUGHT = 70
RSI_OVERSOLD = 30


# ── Import ──────────────────────────────────────────────────────

def parse_row_date(value):
    """'2.01.2025', '1/2/2025', '02.01.2025' or '2025-01-02' -> '2025-01-02'; None if unparseable."""
    if not value:
        return None
    date_part = str(value).strip().split(' ')[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(date_part, fmt).strftime('%Y-%m-%d')
        except ValueError:
            continue
    log.warning("Could not parse futures date '%s'", value)
    return None


def _number(value):
    if value in (None, ''):
        return 0
    return parse_polish_number(value) or 0


def import_futures_csv(conn, text, batch_size=IMPORT_BATCH_SIZE):
    try:
        rows = read_csv_rows(text)
    except Exception as e:
        log.exception('Futures CSV could not be read')
        return {'success': False, 'count': 0, 'error': str(e)}
    return import_futures_rows(conn, rows, batch_size)


def import_futures_rows(conn, rows, batch_size=IMPORT_BATCH_SIZE):
    """Upsert TGE futures rows (one per date + contract). Rows without a settlement price are skipped."""
    try:
        if not rows:
            return {'success': False, 'count': 0, 'error': 'No data found in CSV'}

        total = 0
        pending = 0
        for row in rows:
            date_str = parse_row_date(row.get('tge_rtpe_DataNotowania'))
            contract = (row.get('tge_rtpe_Kontrakt') or '').strip()
            if not date_str or not contract:
                continue
            entry = {col: _number(row.get(src)) for src, col in CSV_COLUMNS.items()}
            if entry['dkr'] == 0:
                continue

            conn.execute('''
                INSERT INTO futures_data (id, date, contract, max_price, min_price, dkr,
                    contracts_count, open_interest, transactions_count, turnover_value, volume)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(date, contract) DO UPDATE SET
                    max_price = excluded.max_price,
                    min_price = excluded.min_price,
                    dkr = excluded.dkr,
                    contracts_count = excluded.contracts_count,
                    open_interest = excluded.open_interest,
                    transactions_count = excluded.transactions_count,
                    turnover_value = excluded.turnover_value,
                    volume = excluded.volume
            ''', (
                f"{date_str}_{contract}", date_str, contract,
                entry['max_price'], entry['min_price'], entry['dkr'],
                entry['contracts_count'], entry['open_interest'], entry['transactions_count'],
                entry['turnover_value'], entry['volume'],
            ))
            total += 1
            pending += 1
            if pending >= batch_size:
                conn.commit()
                pending = 0

        if pending:
            conn.commit()
        log.info('Imported %d futures rows', total)
        return {'success': True, 'count': total}
    except Exception as e:
        log.exception('Futures import failed')
        return {'success': False, 'count': 0, 'error': str(e)}


# ── Contract names ──────────────────────────────────────────────

def _yy(year):
    return f"{year % 100:02d}"


def _add_months(d, months):
    idx = d.month - 1 + months
    return date(d.year + idx // 12, idx % 12 + 1, 1)


def main_contract_name(today=None, offset=1):
    today = today or date.today()
    return f"BASE_Y-{_yy(today.year + offset)}"


def contract_structure(today=None):
    """Forward-curve contracts: next 3 months, next 4 quarters, next 3 years."""
    today = today or date.today()
    months = []
    for i in range(1, 4):
        d = _add_months(today, i)
        label = f"M-{i} ({PL_MONTHS_SHORT[d.month - 1]}'{_yy(d.year)})"
        months.append({'label': label, 'name': f"BASE_M-{d.month:02d}-{_yy(d.year)}"})

    quarters = []
    q_start = _add_months(date(today.year, (today.month - 1) // 3 * 3 + 1, 1), 3)
    for i in range(1, 5):
        q = (q_start.month - 1) // 3 + 1
        quarters.append({'label': f"Q-{i}'{_yy(q_start.year)}", 'name': f"BASE_Q-{q}-{_yy(q_start.year)}"})
        q_start = _add_months(q_start, 3)

    years = [
        {'label': f"Y-{_yy(today.year + n)}", 'name': f"BASE_Y-{_yy(today.year + n)}"}
        for n in (1, 2, 3)
    ]
    return {'months': months, 'quarters': quarters, 'years': years}


def next_year_contract(contract):
    """BASE_Y-26 -> BASE_Y-27; None for non-yearly contracts."""
    m = re.search(r'Y-(\d{2})', contract)
    if not m:
        return None
    nxt = f"{(int(m.group(1)) + 1) % 100:02d}"
    return contract[:m.start(1)] + nxt + contract[m.end(1):]


# ── Indicators ──────────────────────────────────────────────────

def build_ohlc_history(ticks, max_date=None):
    """Ticks (dicts) -> ascending OHLC bars. Open is the previous close."""
    ordered = sorted(ticks, key=lambda t: t['date'])
    if max_date:
        ordered = [t for t in ordered if t['date'] <= max_date]

    history = []
    prev_close = 0
    for t in ordered:
        close = t.get('dkr') or 0
        if close == 0:
            continue
        history.append({
            'date': t['date'],
            'open': prev_close if prev_close > 0 else close,
            'high': t['max_price'] if (t.get('max_price') or 0) > 0 else close,
            'low': t['min_price'] if (t.get('min_price') or 0) > 0 else close,
            'close': close,
            'volume': t.get('volume') or 0,
            'openInterest': t.get('open_interest') or 0,
        })
        prev_close = close
    return history


def calculate_rsi(history, period=RSI_PERIOD):
    """Simple-average RSI over the last `period` close-to-close changes."""
    if len(history) < period + 1:
        return {'value': 0, 'status': 'Neutral'}
    gains = losses = 0.0
    for i in range(len(history) - period, len(history)):
        change = history[i]['close'] - history[i - 1]['close']
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    rs = 100 if avg_loss == 0 else avg_gain / avg_loss
    rsi = 100 - (100 / (1 + rs))

    status = 'Neutral'
    if rsi > RSI_OVERBOUGHT:
        status = 'Wykupiony (Overbought)'
    if rsi < RSI_OVERSOLD:
        status = 'Wyprzedany (Oversold)'
    return {'value': rsi, 'status': status}


def calculate_atr(history, period=ATR_PERIOD):
    if len(history) < period + 1:
        return {'value': 0}
    total = 0.0
    for i in range(len(history) - period, len(history)):
        h, l = history[i]['high'], history[i]['low']
        prev_close = history[i - 1]['close']
        total += max(h - l, abs(h - prev_close), abs(l - prev_close))
    return {'value': total / period}


def calculate_sma(values):
    return sum(values) / len(values) if values else 0


def trend_strength(history, period=SMA_TREND_PERIOD):
    """Last close vs SMA50."""
    if len(history) < period:
        return {'sma50': 0, 'diffPct': 0, 'status': 'Neutral'}
    sma = calculate_sma([h['close'] for h in history[-period:]])
    current = history[-1]['close']
    diff_pct = (current - sma) / sma * 100 if sma > 0 else 0
    if diff_pct > TREND_THRESHOLD_PCT:
        status = 'Silny Wzrostowy (Bullish)'
    elif diff_pct < -TREND_THRESHOLD_PCT:
        status = 'Spadkowy (Bearish)'
    else:
        status = 'Konsolidacja (Neutral)'
    return {'sma50': sma, 'diffPct': diff_pct, 'status': status}


def calendar_spread(near_close, next_price):
    """Near minus far. Positive is backwardation."""
    if next_price is None or not near_close or near_close <= 0:
        return {'value': 0, 'label': 'N/A'}
    value = near_close - next_price
    return {'value': value, 'label': 'Backwardation' if value > 0 else 'Contango'}


# ── Queries ─────────────────────────────────────────────────────

def _contract_ticks(conn, contract, max_date=None, limit=None):
    """Newest-first ticks of one contract on or before max_date."""
    query = 'SELECT * FROM futures_data WHERE contract = ?'
    params = [contract]
    if max_date:
        query += ' AND date <= ?'
        params.append(max_date)
    query += ' ORDER BY date DESC'
    if limit:
        query += ' LIMIT ?'
        params.append(limit)
    return [dict(r) for r in conn.execute(query, params).fetchall()]


def futures_series(conn, contract, limit=30):
    """Ascending price points for one contract, last `limit` (all when limit <= 0)."""
    rows = reversed(_contract_ticks(conn, contract))
    points = [{
        'date': r['date'],
        'price': r['dkr'] or 0,
        'max': r['max_price'],
        'min': r['min_price'],
        'volume': r['volume'],
        'openInterest': r['open_interest'],
    } for r in rows]
    if 0 < limit < len(points):
        points = points[-limit:]
    return points


def futures_details(conn, contract=None, target_date=None, today=None):
    """Full payload for the futures dashboard of one main contract."""
    today = today or date.today()
    main = contract or main_contract_name(today)

    history = build_ohlc_history(_contract_ticks(conn, main), target_date)
    latest_date = history[-1]['date'] if history else (target_date or today.isoformat())
    prev_date = history[-2]['date'] if len(history) > 1 else None

    forward_curve = []
    structure = contract_structure(today)
    for c in structure['months'] + structure['quarters'] + structure['years']:
        docs = _contract_ticks(conn, c['name'], latest_date, CURVE_SMA_DOCS)
        if not docs:
            continue
        forward_curve.append({
            'label': c['label'],
            'period': c['label'],
            'price': docs[0]['dkr'] or 0,
            'sma15': calculate_sma([d['dkr'] or 0 for d in docs]),
            'contract': c['name'],
        })

    prev_prices = {}
    if prev_date:
        for r in conn.execute('SELECT contract, dkr FROM futures_data WHERE date = ?', (prev_date,)):
            prev_prices[r['contract']] = r['dkr'] or 0
    ticker = []
    for r in conn.execute('SELECT * FROM futures_data WHERE date = ?', (latest_date,)):
        price = r['dkr'] or 0
        prev = prev_prices.get(r['contract']) or price
        ticker.append({
            'instrument': r['contract'],
            'price': price,
            'change': (price - prev) / prev * 100 if prev > 0 else 0,
            'open': r['min_price'],
            'max': r['max_price'],
            'min': r['min_price'],
            'volume': r['volume'] or 0,
        })
    ticker.sort(key=lambda t: t['instrument'])

    latest = history[-1] if history else {}
    previous = history[-2] if len(history) > 1 else {}
    latest_close = latest.get('close', 0)
    prev_close = previous.get('close', 0)

    peak_contract = main.replace('BASE', 'PEAK5')
    peak_docs = _contract_ticks(conn, peak_contract, latest_date, 1)
    prev_peak_docs = _contract_ticks(conn, peak_contract, prev_date, 1) if prev_date else []
    peak_price = peak_docs[0]['dkr'] if peak_docs else 0
    prev_peak_price = prev_peak_docs[0]['dkr'] if prev_peak_docs else 0
    spread = peak_price - latest_close if peak_price > 0 and latest_close > 0 else 0
    prev_spread = prev_peak_price - prev_close if prev_peak_price > 0 and prev_close > 0 else 0

    next_price = None
    next_contract = next_year_contract(main)
    if next_contract:
        next_docs = _contract_ticks(conn, next_contract, latest_date, 1)
        if next_docs:
            next_price = next_docs[0]['dkr'] or 0

    return {
        'history': history,
        'forwardCurve': forward_curve,
        'ticker': ticker,
        'kpi': {
            'basePrice': latest_close,
            'peakPrice': peak_price,
            'spread': spread,
            'spreadChange': spread - prev_spread,
            'volume': latest.get('volume', 0),
            'openInterest': latest.get('openInterest', 0),
        },
        'technical': {
            'rsi': calculate_rsi(history),
            'atr': calculate_atr(history),
            'calendarSpread': calendar_spread(latest_close, next_price),
            'trend': trend_strength(history),
        },
        'effectiveDate': latest_date,
    }
