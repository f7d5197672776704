"""
Logging configuration for SalesApp.
Call setup_logging() once at app startup; modules use logging.getLogger('salesapp.<name>').
"""
import logging
import logging.handlers
import os
import json
from datetime import datetime, timezone

LOG_DIR = os.environ.get('LOG_DIR', '')

# extra= keys copied into JSON lines when present on the record
_EXTRA_KEYS = ('route', 'method', 'status', 'duration_ms', 'uid', 'service', 'action', 'count')


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for production log shipping."""
    def format(self, record):
        entry = {
            'ts': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
            'module': record.module,
            'func': record.funcName,
            'line': record.lineno,
        }
        if record.exc_info and record.exc_info[0]:
            entry['exception'] = self.formatException(record.exc_info)
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Plain console format for development."""
    def format(self, record):
        ts = datetime.now().strftime('%H:%M:%S')
        line = f"{ts} [{record.levelname[0]}] {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0]:
            line += '\n' + self.formatException(record.exc_info)
        return line


def setup_logging(level=None, json_logs=None):
    """
    Configure the root logger.

    Args:
        level: log level name (default: LOG_LEVEL env or INFO)
        json_logs: JSON output (default: LOG_JSON env set, or running in production)
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    if json_logs is None:
        json_logs = bool(os.environ.get('LOG_JSON')) or os.environ.get('FLASK_ENV') == 'production'

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    root.addHandler(console)

    if LOG_DIR:
        try:
            os.makedirs(LOG_DIR, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                os.path.join(LOG_DIR, 'salesapp.log'),
                maxBytes=5_000_000, backupCount=5,
            )
            fh.setFormatter(JSONFormatter())
            root.addHandler(fh)
        except OSError as e:
            root.warning('File logging disabled: %s', e)

    for name in ('urllib3', 'werkzeug', 'google_genai', 'httpx'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger('salesapp').info('Logging initialized', extra={'count': len(root.handlers)})
