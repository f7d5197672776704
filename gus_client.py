"""
GUS BIR 1.1 client (Polish statistical office company registry, SOAP 1.2).
Looks companies up by NIP or by name + city and enriches them with the
full reports: contact data, PKD activity codes and board members.
"""
import logging
import os
import time
from xml.sax.saxutils import escape

import requests
from bs4 import BeautifulSoup

from retry import call_with_retry

log = logging.getLogger('salesapp.gus')

DEFAULT_GUS_URL = 'https://wyszukiwarkaregon.stat.gov.pl/wsBIR/UslugaBIRzewnPubl.svc'
ACTION_NS = 'http://CIS/BIR/PUBL/2014/07/IUslugaBIRzewnPubl/'

# BIR drops idle sessions after 60 minutes
SESSION_MAX_AGE = 50 * 60

ENVELOPE = '''<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope" xmlns:ns="http://CIS/BIR/PUBL/2014/07" xmlns:dat="http://CIS/BIR/PUBL/2014/07/DataContract">
  <soap:Header xmlns:wsa="http://www.w3.org/2005/08/addressing">
    <wsa:Action>{action}</wsa:Action>
    <wsa:To>{url}</wsa:To>
  </soap:Header>
  <soap:Body>{body}</soap:Body>
</soap:Envelope>'''


class GusError(RuntimeError):
    pass


def extract_envelope(data):
    """MTOM/multipart responses wrap the SOAP envelope in MIME parts; return just the envelope."""
    if '--uuid:' in data:
        start = data.find('<s:Envelope')
        if start != -1:
            end = data.find('</s:Envelope>', start)
            if end != -1:
                return data[start:end + len('</s:Envelope>')]
    return data


def result_text(envelope_xml, result_tag):
    """Text of the first element named result_tag (namespace prefix ignored)."""
    soup = BeautifulSoup(envelope_xml, features='xml')
    el = soup.find(result_tag)
    return el.get_text() if el else ''


def parse_dane(result_xml):
    """'<root><dane>..</dane>..</root>' -> list of {field: text} dicts."""
    if not result_xml or not result_xml.strip():
        return []
    soup = BeautifulSoup(result_xml, features='xml')
    return [{child.name: child.get_text().strip() for child in dane.find_all(recursive=False)}
            for dane in soup.find_all('dane')]


class GusClient:
    def __init__(self, api_key=None, url=None, timeout=15):
        self.api_key = api_key or os.environ.get('GUS_API_KEY', '')
        self.url = url or os.environ.get('GUS_API_URL', DEFAULT_GUS_URL)
        self.timeout = timeout
        self.session_key = None
        self.logged_in_at = 0.0

    def _post(self, action, body, sid=None):
        headers = {
            'Content-Type': f'application/soap+xml; charset=utf-8; action="{ACTION_NS}{action}"',
        }
        if sid:
            headers['sid'] = sid
        envelope = ENVELOPE.format(action=ACTION_NS + action, url=self.url, body=body)

        def _call():
            resp = requests.post(self.url, data=envelope.encode('utf-8'), headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp
        return extract_envelope(call_with_retry(_call).text)

    def session_valid(self):
        return bool(self.session_key) and time.monotonic() - self.logged_in_at < SESSION_MAX_AGE

    def reset_session(self):
        self.session_key = None
        self.logged_in_at = 0.0

    def login(self):
        if self.session_valid():
            return self.session_key
        self.reset_session()
        if not self.api_key:
            raise GusError('GUS API key not configured')
        try:
            xml = self._post('Zaloguj',
                             f'<ns:Zaloguj><ns:pKluczUzytkownika>{escape(self.api_key)}</ns:pKluczUzytkownika></ns:Zaloguj>')
            key = result_text(xml, 'ZalogujResult')
        except requests.RequestException as e:
            log.error('GUS login error: %s', e)
            raise GusError('Failed to login to GUS API') from e
        if not key:
            raise GusError('Failed to retrieve session key from GUS')
        self.session_key = key
        self.logged_in_at = time.monotonic()
        return key

    def full_report(self, regon, report_name):
        """Rows of one full report; [] on error (reports are optional enrichment)."""
        sid = self.login()
        body = (f'<ns:DanePobierzPelnyRaport><ns:pRegon>{escape(regon)}</ns:pRegon>'
                f'<ns:pNazwaRaportu>{report_name}</ns:pNazwaRaportu></ns:DanePobierzPelnyRaport>')
        try:
            xml = self._post('DanePobierzPelnyRaport', body, sid)
            rows = parse_dane(result_text(xml, 'DanePobierzPelnyRaportResult'))
        except requests.RequestException as e:
            log.warning('GUS report %s failed for %s: %s', report_name, regon, e)
            return []
        if rows and 'ErrorCode' in rows[0]:
            return []
        return rows

    def _search_rows(self, params_xml):
        sid = self.login()
        body = (f'<ns:DaneSzukajPodmioty><ns:pParametryWyszukiwania>{params_xml}'
                f'</ns:pParametryWyszukiwania></ns:DaneSzukajPodmioty>')
        xml = self._post('DaneSzukajPodmioty', body, sid)
        return parse_dane(result_text(xml, 'DaneSzukajPodmiotyResult'))

    def _search(self, params_xml):
        reused = self.session_valid()
        rows = self._search_rows(params_xml)
        # An expired session answers with an empty result instead of a fault
        if not rows and reused:
            log.info('Empty GUS result on a reused session, logging in again')
            self.reset_session()
            rows = self._search_rows(params_xml)
        if not rows or 'ErrorCode' in rows[0]:
            return None
        return self._company_data(rows[0])

    def search_by_nip(self, nip):
        try:
            return self._search(f'<dat:Nip>{escape(nip)}</dat:Nip>')
        except requests.RequestException as e:
            log.error('GUS search error: %s', e)
            raise GusError('Failed to search GUS API') from e

    def search_by_name(self, name, city=None):
        params = f'<dat:Nazwa>{escape(name)}</dat:Nazwa>'
        if city:
            params += f'<dat:Miejscowosc>{escape(city)}</dat:Miejscowosc>'
        try:
            return self._search(params)
        except requests.RequestException as e:
            log.warning('GUS search by name failed for %s: %s', name, e)
            return None

    def _company_data(self, company):
        regon = company.get('Regon', '')
        kind = company.get('Typ', '')  # P: legal entity, F: natural person
        pkd, management = [], []
        email = phone = None

        if regon and kind == 'P':
            legal = self.full_report(regon, 'BIR11OsPrawna')
            if legal:
                email = legal[0].get('praw_adresEmail') or None
                phone = legal[0].get('praw_numerTelefonu') or None
            pkd = [f"{r.get('praw_pkdKod', '')} - {r.get('praw_pkdNazwa', '')}"
                   for r in self.full_report(regon, 'BIR11OsPrawnaPkd')]
            for r in self.full_report(regon, 'BIR11OsPrawnaOsobyDoReprezentacji'):
                person = f"{r.get('praw_imie1', '')} {r.get('praw_nazwisko', '')}".strip()
                role = r.get('praw_funkcja', '')
                entry = f"{person} ({role})" if role else person
                if entry:
                    management.append(entry)
        elif regon and kind == 'F':
            general = self.full_report(regon, 'BIR11OsFizycznaDaneOgolne')
            if general:
                owner = f"{general[0].get('fiz_imie1', '')} {general[0].get('fiz_nazwisko', '')}".strip()
                if owner:
                    management.append(f"{owner} (Właściciel)")
            pkd = [f"{r.get('fiz_pkd_Kod', '')} - {r.get('fiz_pkd_Nazwa', '')}"
                   for r in self.full_report(regon, 'BIR11OsFizycznaPkd')]

        return {
            'name': company.get('Nazwa', ''),
            'nip': company.get('Nip', ''),
            'regon': regon,
            'address': f"{company.get('Ulica', '')} {company.get('NrNieruchomosci', '')}".strip(),
            'city': company.get('Miejscowosc', ''),
            'zipCode': company.get('KodPocztowy', ''),
            'province': company.get('Wojewodztwo', ''),
            'email': email,
            'phone': phone,
            'pkd': pkd,
            'management': management,
        }
