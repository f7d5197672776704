"""
Outbound e-mail over SMTP (implicit TLS, port 465 by default).
"""
import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from retry import ConfigurationError

log = logging.getLogger('salesapp.mailer')


def smtp_settings():
    user = os.environ.get('SMTP_USER', '')
    return {
        'host': os.environ.get('SMTP_HOST', 'ssl0.ovh.net'),
        'port': int(os.environ.get('SMTP_PORT', '465')),
        'user': user,
        'password': os.environ.get('SMTP_PASSWORD', ''),
        'from': os.environ.get('SMTP_FROM') or user,
    }


def send_email(to, subject, text=None, html=None):
    """Send a plain-text (optionally with HTML alternative) message. Returns the Message-ID."""
    cfg = smtp_settings()
    if not cfg['user'] or not cfg['password']:
        raise ConfigurationError('SMTP credentials not configured')

    msg = MIMEMultipart('alternative')
    msg['From'] = cfg['from']
    msg['To'] = to
    msg['Subject'] = subject
    msg['Message-ID'] = make_msgid()
    msg.attach(MIMEText(text or '', 'plain', 'utf-8'))
    if html:
        msg.attach(MIMEText(html, 'html', 'utf-8'))

    with smtplib.SMTP_SSL(cfg['host'], cfg['port'], timeout=20) as server:
        server.login(cfg['user'], cfg['password'])
        server.send_message(msg)
    log.info('Sent e-mail to %s: %s', to, subject)
    return msg['Message-ID']
