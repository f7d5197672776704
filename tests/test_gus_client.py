"""
Tests for the GUS BIR SOAP client (transport mocked).
"""
import sys
import os
from xml.sax.saxutils import escape
from unittest.mock import patch, MagicMock

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gus_client import GusClient, GusError, SESSION_MAX_AGE, extract_envelope, result_text, parse_dane


def envelope(result_tag, text):
    return (
        '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope"><s:Body>'
        f'<Response xmlns="http://CIS/BIR/PUBL/2014/07"><{result_tag}>{escape(text)}</{result_tag}></Response>'
        '</s:Body></s:Envelope>'
    )


def dane(*rows):
    body = ''.join(
        '<dane>' + ''.join(f'<{k}>{escape(v)}</{k}>' for k, v in row.items()) + '</dane>'
        for row in rows
    )
    return f'<root>{body}</root>'


SEARCH_ROW = {
    'Regon': '123456789', 'Nip': '5251234567', 'Typ': 'P', 'Nazwa': 'EKOVOLTIS SP. Z O.O.',
    'Wojewodztwo': 'MAZOWIECKIE', 'Miejscowosc': 'Warszawa', 'KodPocztowy': '00-001',
    'Ulica': 'ul. Prosta', 'NrNieruchomosci': '1',
}

REPORTS = {
    'BIR11OsPrawna': dane({'praw_adresEmail': 'biuro@ekovoltis.pl', 'praw_numerTelefonu': '221234567'}),
    'BIR11OsPrawnaPkd': dane({'praw_pkdKod': '3514Z', 'praw_pkdNazwa': 'HANDEL ENERGIĄ ELEKTRYCZNĄ'}),
    'BIR11OsPrawnaOsobyDoReprezentacji': dane(
        {'praw_imie1': 'Jan', 'praw_nazwisko': 'Kowalski', 'praw_funkcja': 'Prezes'},
        {'praw_imie1': 'Anna', 'praw_nazwisko': 'Nowak', 'praw_funkcja': ''},
    ),
}


def fake_post(action, body, sid=None):
    if action == 'Zaloguj':
        return envelope('ZalogujResult', 'SID123')
    assert sid == 'SID123'
    if action == 'DaneSzukajPodmioty':
        return envelope('DaneSzukajPodmiotyResult', dane(SEARCH_ROW))
    for name, report in REPORTS.items():
        if f'<ns:pNazwaRaportu>{name}</ns:pNazwaRaportu>' in body:
            return envelope('DanePobierzPelnyRaportResult', report)
    return envelope('DanePobierzPelnyRaportResult', dane({'ErrorCode': '4'}))


class TestXmlHelpers:
    """Tests for envelope and result parsing."""

    def test_extract_envelope_from_mtom(self):
        raw = ('--uuid:abc\r\nContent-Type: application/xop+xml\r\n\r\n'
               '<s:Envelope><s:Body/></s:Envelope>\r\n--uuid:abc--')
        assert extract_envelope(raw) == '<s:Envelope><s:Body/></s:Envelope>'

    def test_plain_envelope_untouched(self):
        assert extract_envelope('<x/>') == '<x/>'

    def test_result_text(self):
        assert result_text(envelope('ZalogujResult', 'SID'), 'ZalogujResult') == 'SID'
        assert result_text(envelope('ZalogujResult', 'SID'), 'Other') == ''

    def test_parse_dane(self):
        rows = parse_dane(dane({'Regon': ' 1 '}, {'Regon': '2'}))
        assert rows == [{'Regon': '1'}, {'Regon': '2'}]
        assert parse_dane('') == []


class TestGusClient:
    """Tests for lookups and report enrichment."""

    @patch.object(GusClient, '_post', side_effect=fake_post)
    def test_search_by_nip_legal_entity(self, mock_post):
        company = GusClient(api_key='key').search_by_nip('5251234567')
        assert company['name'] == 'EKOVOLTIS SP. Z O.O.'
        assert company['address'] == 'ul. Prosta 1'
        assert company['zipCode'] == '00-001'
        assert company['email'] == 'biuro@ekovoltis.pl'
        assert company['phone'] == '221234567'
        assert company['pkd'] == ['3514Z - HANDEL ENERGIĄ ELEKTRYCZNĄ']
        assert company['management'] == ['Jan Kowalski (Prezes)', 'Anna Nowak']

    @patch.object(GusClient, '_post', side_effect=fake_post)
    def test_session_key_cached(self, mock_post):
        client = GusClient(api_key='key')
        client.search_by_nip('5251234567')
        client.search_by_nip('5251234567')
        logins = [c for c in mock_post.call_args_list if c[0][0] == 'Zaloguj']
        assert len(logins) == 1

    @patch.object(GusClient, '_post')
    def test_not_found(self, mock_post):
        def post(action, body, sid=None):
            if action == 'Zaloguj':
                return envelope('ZalogujResult', 'SID123')
            return envelope('DaneSzukajPodmiotyResult', dane({'ErrorCode': '4'}))
        mock_post.side_effect = post
        assert GusClient(api_key='key').search_by_nip('0000000000') is None

    @patch.object(GusClient, '_post', side_effect=requests.ConnectionError('down'))
    def test_login_failure(self, mock_post):
        with pytest.raises(GusError):
            GusClient(api_key='key').search_by_nip('5251234567')

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv('GUS_API_KEY', raising=False)
        with pytest.raises(GusError):
            GusClient().login()

    @patch.object(GusClient, '_post')
    def test_search_by_name_swallows_transport_errors(self, mock_post):
        def post(action, body, sid=None):
            if action == 'Zaloguj':
                return envelope('ZalogujResult', 'SID123')
            raise requests.Timeout('slow')
        mock_post.side_effect = post
        assert GusClient(api_key='key').search_by_name('Ekovoltis', 'Warszawa') is None


class TestGusSession:
    """Tests for session reuse, expiry and re-login."""

    def _server(self):
        """Fake BIR endpoint: sid1 expires after its first search, later logins get sid2."""
        state = {'logins': 0, 'searches': {}}

        def post(action, body, sid=None):
            if action == 'Zaloguj':
                state['logins'] += 1
                return envelope('ZalogujResult', f"sid{state['logins']}")
            if action == 'DaneSzukajPodmioty':
                state['searches'][sid] = state['searches'].get(sid, 0) + 1
                if sid == 'sid1' and state['searches'][sid] > 1:
                    return envelope('DaneSzukajPodmiotyResult', '')
                return envelope('DaneSzukajPodmiotyResult', dane(dict(SEARCH_ROW, Typ='')))
            return envelope('DanePobierzPelnyRaportResult', dane({'ErrorCode': '4'}))
        return state, post

    @patch.object(GusClient, '_post')
    def test_expired_session_logs_in_again(self, mock_post):
        state, mock_post.side_effect = self._server()
        client = GusClient(api_key='key')
        results = [client.search_by_nip('5251234567') for _ in range(3)]
        assert [r['nip'] for r in results] == ['5251234567'] * 3
        assert state['logins'] == 2
        assert client.session_key == 'sid2'

    @patch.object(GusClient, '_post')
    def test_fresh_session_empty_result_not_retried(self, mock_post):
        def post(action, body, sid=None):
            if action == 'Zaloguj':
                return envelope('ZalogujResult', 'SID123')
            return envelope('DaneSzukajPodmiotyResult', '')
        mock_post.side_effect = post
        assert GusClient(api_key='key').search_by_nip('0000000000') is None
        logins = [c for c in mock_post.call_args_list if c[0][0] == 'Zaloguj']
        assert len(logins) == 1

    @patch('gus_client.time.monotonic')
    @patch.object(GusClient, '_post', side_effect=fake_post)
    def test_session_expires_after_max_age(self, mock_post, mock_clock):
        mock_clock.return_value = 1000.0
        client = GusClient(api_key='key')
        client.login()
        mock_clock.return_value = 1000.0 + SESSION_MAX_AGE - 1
        client.login()
        mock_clock.return_value = 1000.0 + SESSION_MAX_AGE + 1
        client.login()
        logins = [c for c in mock_post.call_args_list if c[0][0] == 'Zaloguj']
        assert len(logins) == 2

    def test_reset_session(self):
        client = GusClient(api_key='key')
        client.session_key, client.logged_in_at = 'SID', 1.0
        client.reset_session()
        assert client.session_key is None
        assert not client.session_valid()

    @patch('gus_client.requests.post')
    def test_transport_retries_overload(self, mock_post):
        busy = MagicMock(status_code=503)
        busy.raise_for_status.side_effect = requests.HTTPError('503 Service Unavailable', response=busy)
        ok = MagicMock(status_code=200, text=envelope('ZalogujResult', 'SID9'))
        mock_post.side_effect = [busy, ok]
        assert GusClient(api_key='key').login() == 'SID9'
        assert mock_post.call_count == 2
