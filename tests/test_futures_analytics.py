"""
Tests for futures import, contract naming and technical indicators.
"""
import sys
import os
from datetime import date

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from futures_analytics import (
    parse_row_date, import_futures_csv, import_futures_rows, main_contract_name, contract_structure,
    next_year_contract, build_ohlc_history, calculate_rsi, calculate_atr, trend_strength,
    calendar_spread, futures_series, futures_details,
)

CSV_TEXT = (
    'tge_rtpe_DataNotowania;tge_rtpe_Kontrakt;tge_rtpe_KursMax;tge_rtpe_KursMin;'
    'tge_rtpe_KursRozliczeniowy;tge_rtpe_WolumenObrotu\n'
    '02.01.2025;BASE_Y-26;505,00;495,00;500,50;120\n'
    '02.01.2025;BASE_Q-1-25;0;0;0;0\n'
    '02.01.2025;PEAK5_Y-26;610,00;590,00;600,00;15\n'
)


def _insert(conn, day, contract, dkr, max_price=0, min_price=0, volume=0):
    conn.execute('''
        INSERT INTO futures_data (id, date, contract, max_price, min_price, dkr, volume)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (f'{day}_{contract}', day, contract, max_price, min_price, dkr, volume))
    conn.commit()


class TestParseRowDate:
    """Tests for futures CSV date parsing."""

    def test_formats(self):
        assert parse_row_date('2.01.2025') == '2025-01-02'
        assert parse_row_date('02.01.2025 00:00:00') == '2025-01-02'
        assert parse_row_date('1/2/2025') == '2025-01-02'
        assert parse_row_date('2025-01-02') == '2025-01-02'

    def test_unparseable(self):
        assert parse_row_date('yesterday') is None
        assert parse_row_date('') is None


class TestImportFuturesCsv:
    """Tests for the futures CSV upsert."""

    def test_import_skips_rows_without_settlement(self, market_conn):
        result = import_futures_csv(market_conn, CSV_TEXT)
        assert result == {'success': True, 'count': 2}
        row = market_conn.execute("SELECT * FROM futures_data WHERE id = '2025-01-02_BASE_Y-26'").fetchone()
        assert row['dkr'] == 500.5
        assert row['max_price'] == 505.0
        assert row['volume'] == 120

    def test_reimport_upserts(self, market_conn):
        import_futures_csv(market_conn, CSV_TEXT)
        import_futures_csv(market_conn, CSV_TEXT.replace('500,50', '510,00'))
        rows = market_conn.execute("SELECT dkr FROM futures_data WHERE contract = 'BASE_Y-26'").fetchall()
        assert [r['dkr'] for r in rows] == [510.0]

    def test_spreadsheet_rows_with_numeric_cells(self, market_conn):
        rows = [{
            'tge_rtpe_DataNotowania': '2025-01-02',
            'tge_rtpe_Kontrakt': 'BASE_Y-26',
            'tge_rtpe_KursRozliczeniowy': 500.5,
            'tge_rtpe_WolumenObrotu': 120,
        }]
        assert import_futures_rows(market_conn, rows) == {'success': True, 'count': 1}
        row = market_conn.execute('SELECT dkr, volume FROM futures_data').fetchone()
        assert (row['dkr'], row['volume']) == (500.5, 120)

    def test_empty_csv(self, market_conn):
        assert import_futures_csv(market_conn, '') == {'success': False, 'count': 0, 'error': 'No data found in CSV'}


class TestContractNames:
    """Tests for main contract and forward curve naming."""

    def test_main_contract(self):
        assert main_contract_name(date(2025, 6, 1)) == 'BASE_Y-26'
        assert main_contract_name(date(2025, 6, 1), offset=2) == 'BASE_Y-27'

    def test_structure_across_year_end(self):
        s = contract_structure(date(2025, 11, 15))
        assert [m['name'] for m in s['months']] == ['BASE_M-12-25', 'BASE_M-01-26', 'BASE_M-02-26']
        assert s['months'][0]['label'] == "M-1 (gru'25)"
        assert [q['name'] for q in s['quarters']] == ['BASE_Q-1-26', 'BASE_Q-2-26', 'BASE_Q-3-26', 'BASE_Q-4-26']
        assert [y['name'] for y in s['years']] == ['BASE_Y-26', 'BASE_Y-27', 'BASE_Y-28']

    def test_next_year_contract(self):
        assert next_year_contract('BASE_Y-26') == 'BASE_Y-27'
        assert next_year_contract('PEAK5_Y-99') == 'PEAK5_Y-00'
        assert next_year_contract('BASE_M-01-26') is None


class TestIndicators:
    """Tests for OHLC, RSI, ATR, SMA trend and calendar spread."""

    def test_ohlc_open_is_previous_close(self):
        ticks = [
            {'date': '2025-01-03', 'dkr': 500, 'max_price': 510, 'min_price': 0, 'volume': 5, 'open_interest': 10},
            {'date': '2025-01-02', 'dkr': 490, 'max_price': 0, 'min_price': 480, 'volume': 3, 'open_interest': 9},
            {'date': '2025-01-01', 'dkr': 0, 'max_price': 0, 'min_price': 0},
        ]
        history = build_ohlc_history(ticks)
        assert [h['date'] for h in history] == ['2025-01-02', '2025-01-03']
        assert history[0]['open'] == 490 and history[0]['high'] == 490 and history[0]['low'] == 480
        assert history[1]['open'] == 490 and history[1]['high'] == 510 and history[1]['low'] == 500

    def test_ohlc_max_date(self):
        ticks = [{'date': '2025-01-02', 'dkr': 1}, {'date': '2025-01-03', 'dkr': 2}]
        assert [h['date'] for h in build_ohlc_history(ticks, '2025-01-02')] == ['2025-01-02']

    def test_rsi_short_history(self):
        assert calculate_rsi([{'close': 1}] * 14) == {'value': 0, 'status': 'Neutral'}

    def test_rsi_only_gains_is_overbought(self):
        history = [{'close': 100 + i} for i in range(15)]
        rsi = calculate_rsi(history)
        assert rsi['value'] == pytest.approx(100 - 100 / 101)
        assert rsi['status'] == 'Wykupiony (Overbought)'

    def test_rsi_only_losses_is_oversold(self):
        history = [{'close': 100 - i} for i in range(15)]
        assert calculate_rsi(history)['status'] == 'Wyprzedany (Oversold)'

    def test_atr(self):
        history = [{'high': 110, 'low': 100, 'close': 105} for _ in range(15)]
        assert calculate_atr(history)['value'] == 10
        assert calculate_atr(history[:5]) == {'value': 0}

    def test_trend_strength(self):
        flat = [{'close': 100} for _ in range(50)]
        assert trend_strength(flat)['status'] == 'Konsolidacja (Neutral)'
        rising = flat[:-1] + [{'close': 200}]
        assert trend_strength(rising)['status'] == 'Silny Wzrostowy (Bullish)'
        assert trend_strength(flat[:10]) == {'sma50': 0, 'diffPct': 0, 'status': 'Neutral'}

    def test_calendar_spread(self):
        assert calendar_spread(500, 480) == {'value': 20, 'label': 'Backwardation'}
        assert calendar_spread(480, 500) == {'value': -20, 'label': 'Contango'}
        assert calendar_spread(500, None) == {'value': 0, 'label': 'N/A'}


class TestFuturesQueries:
    """Tests for the dashboard payloads read from futures_data."""

    def _seed(self, conn):
        _insert(conn, '2025-01-02', 'BASE_Y-26', 500, 510, 490, 10)
        _insert(conn, '2025-01-02', 'PEAK5_Y-26', 600)
        _insert(conn, '2025-01-02', 'BASE_Y-27', 480)
        _insert(conn, '2025-01-03', 'BASE_Y-26', 510, 515, 505, 12)
        _insert(conn, '2025-01-03', 'PEAK5_Y-26', 630)
        _insert(conn, '2025-01-03', 'BASE_Y-27', 470)

    def test_series_limit(self, market_conn):
        self._seed(market_conn)
        series = futures_series(market_conn, 'BASE_Y-26', limit=1)
        assert len(series) == 1
        assert series[0]['date'] == '2025-01-03'
        assert series[0]['price'] == 510

    def test_details(self, market_conn):
        self._seed(market_conn)
        details = futures_details(market_conn, today=date(2025, 6, 1))
        assert details['effectiveDate'] == '2025-01-03'
        assert [h['close'] for h in details['history']] == [500, 510]

        kpi = details['kpi']
        assert kpi['basePrice'] == 510
        assert kpi['peakPrice'] == 630
        assert kpi['spread'] == 120
        assert kpi['spreadChange'] == 20
        assert kpi['volume'] == 12

        assert details['technical']['calendarSpread'] == {'value': 40, 'label': 'Backwardation'}

        ticker = details['ticker']
        assert [t['instrument'] for t in ticker] == ['BASE_Y-26', 'BASE_Y-27', 'PEAK5_Y-26']
        assert ticker[0]['change'] == pytest.approx(2.0)

        curve = {c['contract']: c for c in details['forwardCurve']}
        assert curve['BASE_Y-26']['sma15'] == 505
        assert curve['BASE_Y-26']['label'] == 'Y-26'
        assert 'BASE_Y-28' not in curve

    def test_details_as_of_date(self, market_conn):
        self._seed(market_conn)
        details = futures_details(market_conn, 'BASE_Y-26', target_date='2025-01-02', today=date(2025, 6, 1))
        assert details['effectiveDate'] == '2025-01-02'
        assert details['kpi']['basePrice'] == 500
        assert details['kpi']['spreadChange'] == 100

    def test_details_without_data(self, market_conn):
        details = futures_details(market_conn, today=date(2025, 6, 1))
        assert details['history'] == []
        assert details['effectiveDate'] == '2025-06-01'
        assert details['kpi']['basePrice'] == 0
