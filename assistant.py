"""
AI sales assistant on Gemini (google-genai).
Conversations are primed with the Ekovoltis persona; the user-facing
assistant falls back through a list of models before giving up.
"""
import json
import logging
import os
import re

from google import genai

from retry import ConfigurationError, call_with_retry

log = logging.getLogger('salesapp.assistant')

AI_TIMEOUT_MS = 15000
GEMINI_MODELS = [
    m.strip() for m in
    os.environ.get('GEMINI_MODELS', 'gemini-2.5-flash,gemini-2.0-flash').split(',')
    if m.strip()
]
GEMINI_ADMIN_MODEL = os.environ.get('GEMINI_ADMIN_MODEL', 'gemini-2.5-flash-lite')
GEMINI_RESEARCH_MODEL = os.environ.get('GEMINI_RESEARCH_MODEL', 'gemini-2.5-flash')
RESEARCH_TIMEOUT_MS = 60000

SALES_PROMPT = '''
Jesteś ekspertem rynku energii i asystentem sprzedaży w firmie Ekovoltis.
Twoim zadaniem jest pomagać handlowcom i administratorom.
Styl wypowiedzi: Profesjonalny, konkretny.

ZASADY PISANIA MAILI:
1. Twoim celem jest ZACHĘCENIE do kontaktu/rozmowy, a nie sprzedaż w mailu.
2. ABSOLUTNIE NIE generuj żadnych ofert cenowych, stawek, ani warunków umowy.
3. NIE wymyślaj cenników.
4. Skup się na korzyściach (oszczędność, stabilność) i Call to Action (prośba o spotkanie/telefon).

WAŻNE INSTRUKCJE DOTYCZĄCE WYKRESÓW:
Jeśli użytkownik prosi o wykres, wizualizację danych lub analitykę:
1. NIE PISZ KODU PYTHON (matplotlib itp).
2. Zamiast tego, wygeneruj obiekt JSON wewnątrz bloku kodu ```json z następującą strukturą:
{
    "type": "chart",
    "chartType": "line" lub "bar",
    "title": "Tytuł wykresu",
    "data": [
        { "label": "Etykieta osi X (np. data)", "value": 123.45 (liczba) },
        ...
    ],
    "xAxisLabel": "Opis osi X",
    "yAxisLabel": "Opis osi Y"
}
3. Dodaj krótki komentarz tekstowy pod wykresem.
'''

CONSULTING_PROMPT = '''
Jesteś ekspertem rynku energii i asystentem sprzedaży w firmie Ekovoltis.
Twoim zadaniem jest pomagać handlowcom i administratorom w:
1. Pisaniu skutecznych maili sprzedażowych (cold mailing).
2. Tłumaczeniu zjawisk rynkowych (np. dlaczego RDN rośnie) w prosty sposób.
3. Zbijaniu obiekcji klientów (negocjacje).
4. Analizie danych o klientach.

Styl wypowiedzi: Profesjonalny, ale przystępny. Konkretny. Skupiony na korzyściach dla klienta końcowego.
Firma Ekovoltis zajmuje się sprzedażą energii elektrycznej, stawiając na transparentność i doradztwo.
'''

SALES_ACK = 'Zrozumiałem.'
CONSULTING_ACK = 'Zrozumiałem. Jestem gotowy pomagać jako ekspert Ekovoltis. W czym mogę pomóc?'

_QUOTES = str.maketrans({'‘': "'", '’': "'", '“': '"', '”': '"'})


class AssistantUnavailable(RuntimeError):
    pass


def sanitize_text(text):
    """Straighten typographic quotes (mobile keyboards) and trim."""
    if not text:
        return ''
    return str(text).translate(_QUOTES).strip()


def validate_messages(messages):
    """Error message for an unusable messages payload, else None."""
    if not isinstance(messages, list) or not messages:
        return 'Invalid messages format'
    for msg in messages:
        if not isinstance(msg, dict) or not isinstance(msg.get('content'), str):
            return 'Invalid messages format'
    return None


def _api_key():
    key = os.environ.get('GOOGLE_GENERATIVE_AI_API_KEY') or os.environ.get('GEMINI_API_KEY', '')
    if not key:
        raise ConfigurationError('Gemini API key not configured')
    return key


def build_contents(messages, prompt, ack, sanitize=True):
    """Persona preamble + prior turns (user/model) + the new user message."""
    clean = sanitize_text if sanitize else (lambda t: t)
    contents = [
        {'role': 'user', 'parts': [{'text': prompt}]},
        {'role': 'model', 'parts': [{'text': ack}]},
    ]
    for msg in messages[:-1]:
        contents.append({
            'role': 'user' if msg.get('role') == 'user' else 'model',
            'parts': [{'text': clean(msg.get('content', ''))}],
        })
    contents.append({'role': 'user', 'parts': [{'text': clean(messages[-1].get('content', ''))}]})
    return contents


def run_chat(contents, model, timeout_ms=AI_TIMEOUT_MS):
    client = genai.Client(api_key=_api_key(), http_options={'timeout': timeout_ms})
    response = client.models.generate_content(model=model, contents=contents)
    return response.text or ''


def chat_with_fallback(messages, models=None):
    """Try each configured model in order; raise AssistantUnavailable when all fail."""
    contents = build_contents(messages, SALES_PROMPT, SALES_ACK)
    last_error = None
    for model in models or GEMINI_MODELS:
        try:
            log.info('Assistant trying model %s', model)
            return run_chat(contents, model)
        except ConfigurationError:
            raise
        except Exception as e:
            log.warning('Model %s failed: %s', model, e)
            last_error = e
    raise AssistantUnavailable(f'AI Service Unavailable: {last_error}')


def consulting_chat(messages, model=None):
    """Stateless single-model chat for the admin console."""
    contents = build_contents(messages, CONSULTING_PROMPT, CONSULTING_ACK, sanitize=False)
    return run_chat(contents, model or GEMINI_ADMIN_MODEL)


def session_title(text):
    return text[:50] + ('...' if len(text) > 50 else '')


_JSON_FENCE = re.compile(r'```(?:json)?\s*|\s*```')


def parse_json_reply(text):
    """JSON object from a model reply, tolerating ```json fences around it."""
    text = (text or '').strip()
    if not text:
        raise ValueError('Empty LLM response')
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(_JSON_FENCE.sub('', text).strip())


def generate_json(prompt, model=None, search=False):
    """
    One-shot research prompt that must answer with a JSON object.

    With search=True the model may ground itself with Google Search; JSON mode
    is not available together with tools, so the reply is parsed leniently.
    Rate-limit errors are retried with backoff.
    """
    if search:
        config = {'temperature': 0.2, 'tools': [{'google_search': {}}]}
    else:
        config = {'temperature': 0.2, 'response_mime_type': 'application/json'}
    client = genai.Client(api_key=_api_key(), http_options={'timeout': RESEARCH_TIMEOUT_MS})
    response = call_with_retry(lambda: client.models.generate_content(
        model=model or GEMINI_RESEARCH_MODEL, contents=prompt, config=config))
    return parse_json_reply(response.text)
