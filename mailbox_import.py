"""
Scheduled import of TGE report e-mails.
Unread messages whose subject matches the RDN or futures report name are
fetched over IMAP, their CSV attachments imported into the market DB, and
the messages flagged as seen.
"""
import email
import imaplib
import logging
import os
from email.header import decode_header, make_header

from energy_prices import decode_csv_bytes, read_csv_rows, import_energy_prices
from futures_analytics import import_futures_csv
from retry import ConfigurationError

log = logging.getLogger('salesapp.mailbox')

MAX_MESSAGES_PER_TYPE = 5
IMPORT_TYPES = ('RDN', 'FUTURES')


def _subjects():
    return {
        'RDN': os.environ.get('RDN_IMPORT_SUBJECT', 'tge_p'),
        'FUTURES': os.environ.get('FUTURES_IMPORT_SUBJECT', 'tge_rtpe'),
    }


def decode_mime_header(value):
    if not value:
        return ''
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError):
        return value


def csv_attachments(msg):
    """(filename, raw bytes) for every CSV attachment in the message."""
    found = []
    for part in msg.walk():
        if part.get_content_maintype() == 'multipart':
            continue
        filename = decode_mime_header(part.get_filename())
        if part.get_content_type() != 'text/csv' and not filename.lower().endswith('.csv'):
            continue
        payload = part.get_payload(decode=True)
        if payload:
            found.append((filename, payload))
    return found


class MailboxImporter:
    """IMAP client for the report mailbox."""

    def __init__(self, host=None, port=None, user=None, password=None, folder=None):
        self.host = host or os.environ.get('IMAP_HOST', '')
        self.port = int(port or os.environ.get('IMAP_PORT', 993))
        self.user = user or os.environ.get('IMAP_USER', '')
        self.password = password or os.environ.get('IMAP_PASSWORD', '')
        self.folder = folder or os.environ.get('IMAP_FOLDER', 'INBOX')
        self.mail = None

    def connect(self):
        if not self.host or not self.user or not self.password:
            raise ConfigurationError('Missing mailbox configuration (IMAP_HOST, IMAP_USER, IMAP_PASSWORD)')
        self.mail = imaplib.IMAP4_SSL(self.host, self.port)
        self.mail.login(self.user, self.password)
        self.mail.select(self.folder)
        log.info('Connected to %s as %s', self.host, self.user)

    def close(self):
        if self.mail is None:
            return
        try:
            self.mail.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            log.debug('IMAP logout failed: %s', e)
        self.mail = None

    def unread_with_subject(self, subject, limit=MAX_MESSAGES_PER_TYPE):
        status, data = self.mail.uid('search', None, 'UNSEEN', 'SUBJECT', f'"{subject}"')
        if status != 'OK':
            log.warning('IMAP search failed: %s', status)
            return []
        uids = data[0].split() if data and data[0] else []
        return uids[:limit]

    def fetch(self, uid):
        status, data = self.mail.uid('fetch', uid, '(BODY.PEEK[])')
        if status != 'OK' or not data or not data[0]:
            raise imaplib.IMAP4.error(f'fetch failed for {uid!r}: {status}')
        return email.message_from_bytes(data[0][1])

    def mark_seen(self, uid):
        self.mail.uid('store', uid, '+FLAGS', '(\\Seen)')

    def import_type(self, conn, import_type):
        """Process unread report mails of one type. Per-message failures are reported, not raised."""
        subject = _subjects()[import_type]
        uids = self.unread_with_subject(subject)
        log.info('%d unread %s report e-mails (subject "%s")', len(uids), import_type, subject)

        results = []
        for uid in uids:
            message_id = uid.decode() if isinstance(uid, bytes) else str(uid)
            try:
                msg = self.fetch(uid)
                sender = decode_mime_header(msg.get('From')) or 'unknown'
                for filename, payload in csv_attachments(msg):
                    text = decode_csv_bytes(payload)
                    if import_type == 'RDN':
                        rows = read_csv_rows(text)
                        if not rows:
                            continue
                        outcome = import_energy_prices(conn, rows, f'mail-import:{sender}')
                    else:
                        outcome = import_futures_csv(conn, text)
                    results.append(dict(outcome, messageId=message_id, filename=filename, type=import_type))
                self.mark_seen(uid)
            except Exception as e:
                log.exception('Failed to import message %s', message_id)
                results.append({'messageId': message_id, 'type': import_type, 'error': str(e)})
        return results

    def run(self, conn, import_type=None):
        types = [import_type] if import_type in IMPORT_TYPES else list(IMPORT_TYPES)
        try:
            self.connect()
            results = []
            for t in types:
                results.extend(self.import_type(conn, t))
            return results
        finally:
            self.close()
