"""
Business card text -> contact fields, and contact fields -> vCard 3.0.
The parser is heuristic: regexes for email / phone / website, keyword lists
for company legal forms and job titles, and a "looks like a name" fallback.
"""
import re

EMAIL_RE = re.compile(r'([a-zA-Z0-9._-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9_-]+)')
PHONE_RE = re.compile(r'(?:\+?48)?\s?(\d{3}[-\s]?\d{3}[-\s]?\d{3})')
URL_RE = re.compile(r'((https?://)?(www\.)?[a-zA-Z0-9-]+\.[a-zA-Z]{2,})(/.*)?', re.IGNORECASE)
ADDRESS_RE = re.compile(r'(ul\.|al\.|pl\.|os\.|aleja|ulica|plac|osiedle|\d{2}-\d{3})', re.IGNORECASE)

JOB_TITLES = [
    'Manager', 'Dyrektor', 'Prezes', 'Specjalista', 'Handlowiec', 'Doradca', 'Director',
    'CEO', 'CTO', 'Sales', 'Account', 'Board', 'Zarząd', 'Wiceprezes',
]
COMPANY_SUFFIXES = ['Sp. z o.o.', 'S.A.', 'GmbH', 'Inc.', 'Ltd.', 'Sp.k.', 'S.J.']

VCARD_NOTE = 'Zeskanowano przez SalesApp'
DEFAULT_CONTACT_NAME = 'Imported Contact'


def _is_tax_id_line(line):
    lower = line.lower()
    return 'nip' in lower or 'regon' in lower


def parse_business_card(text):
    """Extract name, email, phone, website, company and jobTitle from OCR text."""
    lines = [l.strip() for l in (text or '').split('\n') if l.strip()]
    data = {'fullText': text}

    for line in lines:
        if 'email' not in data:
            m = EMAIL_RE.search(line)
            if m:
                data['email'] = m.group(0)

        if 'phone' not in data and not _is_tax_id_line(line):
            m = PHONE_RE.search(line)
            if m:
                phone = re.sub(r'[\s-]', '', m.group(0))
                if len(phone) == 9:
                    phone = '+48' + phone
                data['phone'] = phone

        if 'website' not in data and '@' not in line:
            m = URL_RE.search(line)
            if m:
                website = m.group(0)
                if not website.startswith('http'):
                    website = 'https://' + website
                data['website'] = website

    info_lines = [
        line for line in lines
        if not EMAIL_RE.search(line)
        and not PHONE_RE.search(line)
        and not (URL_RE.search(line) and '@' not in line)
    ]

    for line in info_lines:
        if 'company' not in data and any(s in line for s in COMPANY_SUFFIXES):
            data['company'] = line
        if 'jobTitle' not in data and any(t.lower() in line.lower() for t in JOB_TITLES):
            data['jobTitle'] = line

    for line in info_lines:
        words = line.split(' ')
        if (line != data.get('company') and line != data.get('jobTitle')
                and not ADDRESS_RE.search(line)
                and 2 <= len(words) <= 4
                and re.match(r'[A-Z]', line)):
            data['name'] = line
            break
    else:
        local_part = data.get('email', '').split('@')[0]
        if '.' in local_part:
            data['name'] = ' '.join(p[:1].upper() + p[1:] for p in local_part.split('.'))

    return data


# ── vCard ───────────────────────────────────────────────────────

VCARD_FIELDS = ('firstName', 'lastName', 'name', 'email', 'company', 'jobTitle',
                'website', 'address', 'phone')


def vcard_escape(value):
    return (value.replace('\\', '\\\\')
                 .replace('\n', '\\n')
                 .replace(';', '\\;')
                 .replace(',', '\\,'))


def normalize_phone(raw):
    """'0048 600-123-456' -> '+48600123456'. Only a leading '+' survives."""
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        return None
    p = str(raw).strip()
    if p.startswith('00'):
        p = '+' + p[2:]
    p = re.sub(r'[^\d+]', '', p)
    p = p[:1] + p[1:].replace('+', '')
    return p or None


def _clean(value):
    return value.strip() if isinstance(value, str) and value.strip() else None


def generate_vcard(data):
    first = _clean(data.get('firstName'))
    last = _clean(data.get('lastName'))
    if first or last:
        name = ' '.join(p for p in (first, last) if p)
    else:
        name = _clean(data.get('name')) or DEFAULT_CONTACT_NAME

    email = _clean(data.get('email'))
    company = _clean(data.get('company'))
    title = _clean(data.get('jobTitle'))
    website = _clean(data.get('website'))
    address = _clean(data.get('address'))
    phone = normalize_phone(data.get('phone'))

    parts = ['BEGIN:VCARD', 'VERSION:3.0']
    parts.append(f"N:{vcard_escape(last or '')};{vcard_escape(first or '')};;;")
    parts.append(f"FN:{vcard_escape(name)}")
    if company:
        parts.append(f"ORG:{vcard_escape(company)}")
    if title:
        parts.append(f"TITLE:{vcard_escape(title)}")
    if phone:
        parts.append(f"TEL;TYPE=CELL:{phone}")
    if email:
        parts.append(f"EMAIL;TYPE=WORK:{vcard_escape(email.lower())}")
    if website:
        parts.append(f"URL:{vcard_escape(website)}")
    if address:
        parts.append(f"ADR;TYPE=WORK:;;{vcard_escape(address)};;;;")
    parts.append(f"NOTE:{vcard_escape(VCARD_NOTE)}")
    parts.append('END:VCARD')
    return '\r\n'.join(parts)
