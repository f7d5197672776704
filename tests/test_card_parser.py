"""
Tests for business card parsing and vCard generation.
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from card_parser import parse_business_card, generate_vcard, normalize_phone, vcard_escape

CARD_TEXT = '\n'.join([
    'Jan Kowalski',
    'Dyrektor Handlowy',
    'Ekovoltis Sp. z o.o.',
    'ul. Prosta 1, 00-001 Warszawa',
    'tel. 600 123 456',
    'jan.kowalski@ekovoltis.pl',
    'www.ekovoltis.pl',
])


class TestParseBusinessCard:
    """Tests for OCR text -> contact fields."""

    def test_full_card(self):
        data = parse_business_card(CARD_TEXT)
        assert data['fullText'] == CARD_TEXT
        assert data['email'] == 'jan.kowalski@ekovoltis.pl'
        assert data['phone'] == '+48600123456'
        assert data['website'] == 'https://www.ekovoltis.pl'
        assert data['company'] == 'Ekovoltis Sp. z o.o.'
        assert data['jobTitle'] == 'Dyrektor Handlowy'
        assert data['name'] == 'Jan Kowalski'

    def test_name_falls_back_to_email(self):
        data = parse_business_card('ACME\nanna.nowak@acme.com')
        assert data['name'] == 'Anna Nowak'

    def test_tax_id_line_is_not_a_phone(self):
        data = parse_business_card('NIP: 525 123 456 7')
        assert 'phone' not in data

    def test_phone_with_country_code_kept(self):
        data = parse_business_card('+48 600-123-456')
        assert data['phone'] == '+48600123456'

    def test_empty_text(self):
        assert parse_business_card('') == {'fullText': ''}


class TestVcard:
    """Tests for vCard 3.0 output."""

    def test_basic_card(self):
        card = generate_vcard({
            'name': 'Jan Kowalski',
            'phone': '0048 600-123-456',
            'email': 'Jan@X.PL',
            'company': 'A; B',
        })
        assert card.split('\r\n') == [
            'BEGIN:VCARD',
            'VERSION:3.0',
            'N:;;;;',
            'FN:Jan Kowalski',
            'ORG:A\\; B',
            'TEL;TYPE=CELL:+48600123456',
            'EMAIL;TYPE=WORK:jan@x.pl',
            'NOTE:Zeskanowano przez SalesApp',
            'END:VCARD',
        ]

    def test_first_and_last_name(self):
        card = generate_vcard({'firstName': 'Anna', 'lastName': 'Nowak', 'address': 'ul. Długa 5'})
        assert 'N:Nowak;Anna;;;' in card
        assert 'FN:Anna Nowak' in card
        assert 'ADR;TYPE=WORK:;;ul. Długa 5;;;;' in card

    def test_default_name(self):
        assert 'FN:Imported Contact' in generate_vcard({'name': '   '})

    def test_normalize_phone(self):
        assert normalize_phone('+48 (600) 123+456') == '+48600123456'
        assert normalize_phone('') is None
        assert normalize_phone('---') is None

    def test_normalize_phone_non_string(self):
        assert normalize_phone(600123456) == '600123456'
        assert normalize_phone(['600']) is None
        assert normalize_phone({'n': 1}) is None
        assert normalize_phone(True) is None

    def test_escape(self):
        assert vcard_escape('a,b;c\nd\\') == 'a\\,b\\;c\\nd\\\\'
