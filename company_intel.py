"""
Company research for the CRM: website summary for a scanned business card
(enrich) and a combined GUS + Gemini profile of a prospect (client intelligence).
"""
import logging
import re

import requests
from bs4 import BeautifulSoup

from assistant import generate_json

log = logging.getLogger('salesapp.company_intel')

USER_AGENT = ('Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36')
PAGE_TIMEOUT = 8
MAX_PAGE_CHARS = 15000
MAX_PROMPT_PAGE_CHARS = 12000
MAX_PROMPT_OCR_CHARS = 2000

ENRICH_PROMPT = '''
Zadanie: Jako analityk biznesowy, uzupełnij notatkę o firmie (B2B).
Wejście: nazwa firmy, strona WWW (opcjonalnie), OCR z wizytówki (opcjonalnie), tekst ze strony (opcjonalnie).

Zwróć CZYSTY JSON:
{{
  "companySummary": string,         // 3-6 krótkich, konkretnych zdań o działalności firmy po polsku.
  "industry": string|null,          // np. "Fotowoltaika", "Produkcja mebli", "Logistyka"
  "hqOrLocation": string|null,      // Siedziba główna lub miasto
  "keyLinks": {{ "website": string|null, "linkedin": string|null }}
}}

Dane wejściowe:
- Firma: {company}
- Website: {website}
- OCR Wizytówki: """{raw_text}"""
- Treść strony WWW: """{page_text}"""
'''

INTELLIGENCE_PROMPT = '''
Jesteś analitykiem wywiadu gospodarczego (OSINT). Analizujesz firmę:
Nazwa: "{name}"
Miasto: "{city}"
NIP: "{nip}"
WWW: "{website}"

Twoje zadanie:
1. Znajdź stronę WWW firmy (jeśli nie podano).
2. Znajdź profile społecznościowe (LinkedIn, Facebook).
3. Znajdź informacje o kluczowych osobach. "Prezes", "Wiceprezes", "Członek Zarządu",
   "Prokurent" -> "management". "Przewodniczący Rady", "Członek Rady", "Sekretarz Rady"
   -> "supervisory". Osoby nadzorujące, co do których nie masz pewności -> "supervisory".
4. Oszacuj wielkość firmy (przychody, zatrudnienie) na podstawie dostępnych danych.
5. Streść krótko czym firma się zajmuje (branża, produkty).
6. Jeśli nie mamy NIPu, spróbuj go znaleźć w sieci.
7. Wyszukaj 3 ostatnie lub najważniejsze newsy/wydarzenia związane z firmą.

Zwróć odpowiedź WYŁĄCZNIE jako JSON:
{{
   "website": "url lub null",
   "nip": "znaleziony nip lub null",
   "socials": {{ "linkedin": "url", "facebook": "url", "instagram": "url" }},
   "people": {{ "management": ["Jan Kowalski - Prezes"], "supervisory": [] }},
   "size_estimation": {{ "revenue": "np. 10m+", "employees": "np. 50-100" }},
   "summary": "krótki opis...",
   "news": ["tytuł 1"],
   "technologies": ["tech1"]
}}
'''


def clean_nip(value):
    return re.sub(r'\D', '', str(value or ''))


def website_url(website):
    """'firma.pl' -> 'https://firma.pl'; None unless it looks like a host name."""
    if not isinstance(website, str) or '.' not in website:
        return None
    url = website.strip()
    return url if url.startswith('http') else f'https://{url}'


def page_text(html):
    """Visible text of an HTML page, whitespace collapsed and capped."""
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    return ' '.join(soup.get_text(' ').split())[:MAX_PAGE_CHARS]


def fetch_page_text(url):
    """Text of the company page; '' when it cannot be fetched (the model still has the name)."""
    log.info('Fetching %s', url)
    try:
        resp = requests.get(url, headers={'User-Agent': USER_AGENT}, timeout=PAGE_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as e:
        log.warning('Web fetch failed for %s: %s', url, e)
        return ''
    return page_text(resp.text)


def enrich_company(company=None, website=None, raw_text=None):
    """Gemini summary of a company from its website and business-card OCR text."""
    url = website_url(website)
    text = fetch_page_text(url) if url else ''
    prompt = ENRICH_PROMPT.format(
        company=company or 'Nieznana',
        website=website or 'Brak',
        raw_text=(raw_text or '')[:MAX_PROMPT_OCR_CHARS],
        page_text=text[:MAX_PROMPT_PAGE_CHARS],
    )
    return generate_json(prompt)


def client_intelligence(gus, nip=None, name=None, city=None, website=None,
                        track_gus=None, track_gemini=None):
    """
    Registry data plus a web-grounded AI profile of a prospect.

    NIP given: GUS lookup first, its name/city feed the prompt. Name given:
    GUS by name only when a city is known. If GUS found nothing but the model
    reports a 10-digit NIP, GUS is asked once more with it. track_gus and
    track_gemini are called with an action name for every paid call.
    """
    track_gus = track_gus or (lambda action: None)
    track_gemini = track_gemini or (lambda action: None)
    nip = clean_nip(nip)
    name = (name or '').strip()
    city = (city or '').strip()

    formal = None
    if nip:
        formal = gus.search_by_nip(nip)
        track_gus('search')
    elif city:
        formal = gus.search_by_name(name, city)
        track_gus('search')

    prompt = INTELLIGENCE_PROMPT.format(
        name=(formal or {}).get('name') or name or 'Nieznana',
        city=(formal or {}).get('city') or city or 'Nieznane',
        nip=(formal or {}).get('nip') or nip or 'Nieznany',
        website=website or 'Szukaj w sieci',
    )
    try:
        intelligence = generate_json(prompt, search=True)
    except ValueError as e:
        log.warning('Unparseable intelligence reply: %s', e)
        intelligence = {'error': 'Failed to parse'}
    track_gemini('generate_content')

    found_nip = clean_nip(intelligence.get('nip')) if isinstance(intelligence, dict) else ''
    if not formal and len(found_nip) == 10:
        log.info('Model found NIP %s, checking GUS', found_nip)
        formal = gus.search_by_nip(found_nip)
        track_gus('search')

    return {
        'status': 'OK',
        'source': {'gus': bool(formal), 'ai': True},
        'data': {'formal': formal, 'intelligence': intelligence},
    }


def lead_fields(intelligence):
    """CRM lead columns filled from a client-intelligence profile."""
    if not isinstance(intelligence, dict):
        return {}
    people = intelligence.get('people') or {}
    size = intelligence.get('size_estimation') or {}
    socials = {k: v for k, v in (intelligence.get('socials') or {}).items() if v}
    return {
        'website': intelligence.get('website') or None,
        'keyPeople': list(people.get('management') or []) + list(people.get('supervisory') or []),
        'revenue': size.get('revenue') or None,
        'employees': size.get('employees') or None,
        'socials': socials,
        'description': intelligence.get('summary') or None,
        'technologies': list(intelligence.get('technologies') or []),
    }
