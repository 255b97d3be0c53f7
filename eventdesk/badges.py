"""
Printable badges.  A badge template is a dict stored in an event's settings
under "badge_template", shaped like this::

    {
        "size": "4x3",                  # a key of c.BADGE_SIZES
        "text_case": "none",            # default for text elements
        "elements": [
            {"type": "text", "content": "{{name}}", "x": 20, "y": 40,
             "width": 248, "height": 50, "font_size": 28, "bold": true,
             "align": "center", "color": "#1a1a2e", "text_case": "upper"},
            {"type": "qr_code", "content": "{{verify_url}}", "x": 104,
             "y": 106, "width": 80, "height": 80},
            {"type": "shape", "x": 0, "y": 0, "width": 288, "height": 20,
             "color": "#1f2937"},
            {"type": "line", "x": 20, "y": 90, "width": 248, "height": 1}
        ]
    }

Coordinates are in points measured from the top left corner of the badge,
the way the badge designer lays them out; reportlab measures from the
bottom left so we flip them when drawing.
"""
import re
from io import BytesIO

import qrcode
from pockets.autolog import log
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from eventdesk.config import c
from eventdesk.errors import ValidationError
from eventdesk.utils import utcnow


PLACEHOLDER_RE = re.compile(r'\{\{\s*(\w+)\s*\}\}')

DEFAULT_TEMPLATE = {
    'size': '4x3',
    'text_case': 'none',
    'elements': [
        {'type': 'text', 'content': '{{name}}', 'x': 20, 'y': 30, 'width': 248, 'height': 40,
         'font_size': 24, 'bold': True, 'align': 'center', 'color': '#1a1a2e', 'text_case': 'upper', 'z_index': 1},
        {'type': 'text', 'content': '{{ticket_type}}', 'x': 20, 'y': 72, 'width': 248, 'height': 22,
         'font_size': 14, 'align': 'center', 'color': '#4a4a68', 'z_index': 1},
        {'type': 'text', 'content': '{{institution}}', 'x': 20, 'y': 96, 'width': 248, 'height': 18,
         'font_size': 11, 'align': 'center', 'color': '#6b6b80', 'z_index': 1},
        {'type': 'qr_code', 'content': '{{verify_url}}', 'x': 114, 'y': 118, 'width': 60, 'height': 60, 'z_index': 1},
        {'type': 'text', 'content': '{{registration_number}}', 'x': 20, 'y': 186, 'width': 248, 'height': 16,
         'font_size': 9, 'align': 'center', 'color': '#888888', 'z_index': 1},
    ],
}


def hex_to_rgb(value):
    """Returns (r, g, b) floats between 0 and 1; anything unparseable is black."""
    match = re.match(r'^#?([0-9a-f]{2})([0-9a-f]{2})([0-9a-f]{2})$', (value or '').strip(), re.IGNORECASE)
    if not match:
        return (0.0, 0.0, 0.0)
    return tuple(int(part, 16) / 255 for part in match.groups())


def apply_text_case(text, text_case=None):
    """
    text_case may be a c.TEXT_CASE value or one of the names "upper",
    "uppercase", "lower", "lowercase", "capitalize" or "none".
    """
    if text_case in (None, '', 'none', c.CASE_NONE):
        return text
    case = c.enum_value('text_case', text_case) or c.enum_value('text_case', 'case_' + str(text_case))

    if case == c.CASE_UPPER:
        return text.upper()
    elif case == c.CASE_LOWER:
        return text.lower()
    elif case == c.CASE_CAPITALIZE:
        return re.sub(r'(^|[\s.])([a-z])', lambda m: m.group(1) + m.group(2).upper(), text.lower())
    return text


def _short_date(day, with_year=True):
    return '{} {}'.format(day.day, day.strftime('%b %Y' if with_year else '%b'))


def _event_dates(event):
    if not event.start_date:
        return ''
    if event.end_date and event.end_date != event.start_date:
        return '{} - {}'.format(_short_date(event.start_date, with_year=False), _short_date(event.end_date))
    return _short_date(event.start_date)


def placeholder_values(registration, event, base_url=None):
    if base_url:
        verify_url = base_url.rstrip('/') + '/v/' + registration.checkin_token
    else:
        verify_url = registration.verify_url
    return {
        'name': registration.attendee_name,
        'registration_number': registration.registration_number,
        'ticket_type': registration.ticket_type.name if registration.ticket_type else '',
        'email': registration.attendee_email,
        'phone': registration.attendee_phone,
        'institution': registration.attendee_institution,
        'designation': registration.attendee_designation,
        'event_name': event.name if event else '',
        'event_date': _event_dates(event) if event else '',
        'addons': ', '.join(registration.addon_names),
        'checkin_token': registration.checkin_token,
        'checkin_url': verify_url,
        'verify_url': verify_url,
    }


def fill_placeholders(text, registration, event, base_url=None):
    """
    Replaces {{name}}, {{event_name}}, {{verify_url}} and friends with values
    from the registration.  Unknown placeholders are left alone so that a
    typo in a template is visible on the printed badge.
    """
    values = placeholder_values(registration, event, base_url)

    def replace(match):
        value = values.get(match.group(1))
        return match.group(0) if value is None else str(value or '')
    return PLACEHOLDER_RE.sub(replace, text or '')


def badge_size(template):
    size = (template or {}).get('size') or c.DEFAULT_BADGE_SIZE
    if size not in c.BADGE_SIZES:
        raise ValidationError('{!r} is not a badge size we know how to print', size)
    return c.BADGE_SIZES[size]


def _qr_image(data):
    qr = qrcode.QRCode(version=1, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=1)
    qr.add_data(data)
    qr.make(fit=True)
    buffer = BytesIO()
    qr.make_image(fill_color='black', back_color='white').save(buffer, format='PNG')
    buffer.seek(0)
    return ImageReader(buffer)


def _draw_element(pdf, element, badge_height, registration, event, default_case, base_url):
    x = float(element.get('x', 0))
    width = float(element.get('width', 0))
    height = float(element.get('height', 0))
    y = badge_height - float(element.get('y', 0)) - height
    kind = element.get('type')

    if kind == 'shape':
        pdf.setFillColorRGB(*hex_to_rgb(element.get('color') or element.get('background_color') or '#ffffff'))
        pdf.rect(x, y, width, height, stroke=0, fill=1)

    elif kind == 'line':
        pdf.setStrokeColorRGB(*hex_to_rgb(element.get('color') or '#000000'))
        pdf.setLineWidth(max(1, height))
        pdf.line(x, y + height / 2, x + width, y + height / 2)

    elif kind == 'text':
        text = fill_placeholders(element.get('content', ''), registration, event, base_url)
        text = apply_text_case(text, element.get('text_case', default_case))
        if not text:
            return
        font = 'Helvetica-Bold' if element.get('bold') else 'Helvetica'
        font_size = float(element.get('font_size', 14))

        # shrink long names until they fit the box rather than running off the badge
        while width and font_size > 6 and stringWidth(text, font, font_size) > width:
            font_size -= 1

        pdf.setFont(font, font_size)
        pdf.setFillColorRGB(*hex_to_rgb(element.get('color') or '#000000'))
        text_y = y + (height - font_size) / 2
        align = element.get('align', 'left')
        if align == 'center':
            pdf.drawCentredString(x + width / 2, text_y, text)
        elif align == 'right':
            pdf.drawRightString(x + width, text_y, text)
        else:
            pdf.drawString(x, text_y, text)

    elif kind == 'qr_code':
        data = fill_placeholders(element.get('content') or '{{verify_url}}', registration, event, base_url)
        size = min(width, height)
        pdf.drawImage(_qr_image(data), x + (width - size) / 2, y + (height - size) / 2, size, size)

    else:
        log.debug('Skipping badge element of unknown type {!r}', kind)


def sheet_layout(badge_width, badge_height, page_size=None):
    """
    Where badges go when several are printed on one sheet: a list of (x, y)
    bottom left corners in reportlab coordinates, filling rows from the top
    and centering the grid on the page.
    """
    page_width, page_height = page_size or c.PAGE_SIZE_A4
    columns, rows = int(page_width // badge_width), int(page_height // badge_height)
    if not columns or not rows:
        raise ValidationError('A {}x{} badge does not fit on the sheet', badge_width, badge_height)
    left = (page_width - columns * badge_width) / 2
    top = page_height - (page_height - rows * badge_height) / 2
    return [(left + col * badge_width, top - (row + 1) * badge_height)
            for row in range(rows) for col in range(columns)]


def render_badges(registrations, event, template=None, base_url=None, sheet=False):
    """
    Returns the bytes of a PDF of badges for the given registrations, using
    `template` or else the event's saved template or else our default.  Each
    badge gets its own page sized to the badge unless `sheet` is set, in
    which case as many badges as fit are tiled onto each A4 page.  Each
    registration's badge_generated_at is set; the caller commits.
    """
    template = template or event.setting('badge_template') or DEFAULT_TEMPLATE
    width, height = badge_size(template)
    default_case = template.get('text_case', 'none')
    elements = sorted(
        [e for e in template.get('elements', []) if e.get('visible', True)],
        key=lambda e: e.get('z_index', 0))
    slots = sheet_layout(width, height) if sheet else [(0, 0)]

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=c.PAGE_SIZE_A4 if sheet else (width, height))
    pdf.setTitle('{} badges'.format(event.name))

    now = utcnow()
    count = 0
    for registration in registrations:
        if count and count % len(slots) == 0:
            pdf.showPage()
        pdf.saveState()
        pdf.translate(*slots[count % len(slots)])
        for element in elements:
            _draw_element(pdf, element, height, registration, event, default_case, base_url)
        pdf.restoreState()
        registration.badge_generated_at = now
        count += 1

    if not count:
        raise ValidationError('There are no registrations to print badges for')

    pdf.showPage()
    pdf.save()
    log.info('Rendered {} badges for {}', count, event.name)
    return buffer.getvalue()


def verify_badge(session, token):
    """
    What the QR code on a badge links to: enough to confirm at the door that
    a badge is genuine, without exposing contact details.
    """
    registration = session.registration_by_token(token)
    event = registration.event
    return {
        'valid': registration.status == c.REG_CONFIRMED,
        'status': registration.status_label,
        'attendee_name': registration.attendee_name,
        'institution': registration.attendee_institution,
        'registration_number': registration.registration_number,
        'ticket_type': registration.ticket_type.name if registration.ticket_type else '',
        'addons': registration.addon_names,
        'checked_in': registration.checked_in,
        'checked_in_at': registration.checked_in_at,
        'event': {
            'name': event.name,
            'dates': _event_dates(event),
            'venue': event.venue,
            'logo_url': event.logo_url,
        },
    }
