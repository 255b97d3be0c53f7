from io import BytesIO
from os.path import splitext

import requests
from pockets.autolog import log
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from eventdesk.config import c
from eventdesk.errors import ExtractionError
from eventdesk.travel_matching import confidence, match_itinerary, parse_journeys, serialize_result
from eventdesk.utils import utcnow


def _pdf_text(content):
    try:
        reader = PdfReader(BytesIO(content))
        return '\n'.join(page.extract_text() or '' for page in reader.pages)
    except PdfReadError as e:
        log.error('Unable to read uploaded PDF', exc_info=True)
        raise ExtractionError('We could not read that PDF: {}', e)


def _service_text(filename, content):
    if not c.EXTRACTION_SERVICE_URL:
        raise ExtractionError('Only PDF tickets can be read on this server', status=422)

    headers = {}
    if c.EXTRACTION_SERVICE_TOKEN:
        headers['Authorization'] = 'Bearer ' + c.EXTRACTION_SERVICE_TOKEN
    try:
        response = requests.post(
            c.EXTRACTION_SERVICE_URL,
            files={'file': (filename, content)},
            headers=headers,
            timeout=c.EXTRACTION_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        log.error('Ticket extraction service failed for {}', filename, exc_info=True)
        raise ExtractionError('The ticket reader is unavailable right now: {}', e, status=502)

    if not isinstance(data, dict):
        log.error('Ticket extraction service sent {} instead of an object for {}', type(data).__name__, filename)
        raise ExtractionError('The ticket reader sent back something we could not read', status=502)
    return data.get('text') or ''


def extract_text(filename, content):
    """
    Returns the text of an uploaded ticket.  PDFs are read here; images and
    anything else go to the extraction service.
    """
    if not content:
        raise ExtractionError('The uploaded file is empty')

    if splitext(filename or '')[1].lower() == '.pdf' or content[:5] == b'%PDF-':
        text = _pdf_text(content)
    else:
        text = _service_text(filename, content)

    if not text.strip():
        raise ExtractionError('No text could be read from {}', filename or 'that file', status=422)
    return text


def extract_and_match(session, itinerary, filename, content):
    """
    Reads a ticket for `itinerary`, works out which requested legs it covers,
    and stores the outcome on itinerary.extraction so the travel desk can
    review it before applying anything.
    """
    text = extract_text(filename, content)
    journeys = parse_journeys(text)
    result = match_itinerary(journeys, itinerary)
    score = confidence(result, itinerary.trip_type)

    extraction = {
        'filename': filename,
        'extracted_at': utcnow().isoformat(),
        'journeys': [journey.to_dict() for journey in journeys],
        'match': serialize_result(result),
        'confidence': score,
    }
    itinerary.extraction = extraction
    session.add(itinerary)
    log.info('Read {} journeys from {} for {} with confidence {}',
             len(journeys), filename, itinerary.speaker_email, score)
    return extraction
