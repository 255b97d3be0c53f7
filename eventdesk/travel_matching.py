"""
Reads flight details out of the text of an e-ticket and checks them against
what a speaker asked for.

Ticket layouts vary a lot between airlines and booking sites, so this is a
collection of heuristics tuned on Indian domestic tickets rather than a real
parser: we look for "City - City <date>" route headers, then attach the
nearest PNR, flight number and airport/time pairs to each route.
"""
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

from pockets.autolog import log

from eventdesk.config import c
from eventdesk.utils import localized_now


AIRPORT_CODES = {
    # Metro cities
    'DEL': 'Delhi', 'BOM': 'Mumbai', 'BLR': 'Bangalore', 'MAA': 'Chennai', 'CCU': 'Kolkata', 'HYD': 'Hyderabad',
    # South
    'CJB': 'Coimbatore', 'TRZ': 'Tiruchirappalli', 'IXM': 'Madurai', 'COK': 'Kochi', 'TRV': 'Trivandrum',
    'CCJ': 'Kozhikode', 'IXE': 'Mangalore', 'MYQ': 'Mysore', 'HBX': 'Hubli', 'VTZ': 'Visakhapatnam',
    'VGA': 'Vijayawada', 'TIR': 'Tirupati', 'RJA': 'Rajahmundry',
    # West
    'PNQ': 'Pune', 'NAG': 'Nagpur', 'AMD': 'Ahmedabad', 'STV': 'Surat', 'BDQ': 'Vadodara', 'RAJ': 'Rajkot',
    'JGA': 'Jamnagar', 'BHJ': 'Bhuj', 'GOI': 'Goa', 'GOX': 'Mopa', 'KLH': 'Kolhapur', 'NDC': 'Nanded',
    # North
    'JAI': 'Jaipur', 'UDR': 'Udaipur', 'JDH': 'Jodhpur', 'BKB': 'Bikaner', 'KTU': 'Kota', 'LKO': 'Lucknow',
    'VNS': 'Varanasi', 'AGR': 'Agra', 'KNU': 'Kanpur', 'GOP': 'Gorakhpur', 'AYJ': 'Ayodhya', 'IDR': 'Indore',
    'BHO': 'Bhopal', 'JLR': 'Jabalpur', 'GWL': 'Gwalior', 'PAT': 'Patna', 'GAY': 'Gaya', 'DBR': 'Darbhanga',
    'IXR': 'Ranchi', 'IXW': 'Jamshedpur', 'DEO': 'Deoghar', 'BBI': 'Bhubaneswar', 'JRG': 'Jharsuguda',
    'RPR': 'Raipur', 'IXB': 'Bagdogra', 'ATQ': 'Amritsar', 'LUH': 'Ludhiana', 'IXC': 'Chandigarh',
    'SXR': 'Srinagar', 'IXJ': 'Jammu', 'IXL': 'Leh', 'DED': 'Dehradun', 'IXD': 'Prayagraj',
    # North East
    'GAU': 'Guwahati', 'DIB': 'Dibrugarh', 'JRH': 'Jorhat', 'IXS': 'Silchar', 'IMF': 'Imphal', 'DMU': 'Dimapur',
    'AJL': 'Aizawl', 'IXA': 'Agartala',
    # Islands
    'IXZ': 'Port Blair',
}

# Other names people and booking sites use for the same places
CITY_ALIASES = {
    'DEL': ['new delhi'],
    'BOM': ['bombay'],
    'BLR': ['bengaluru', 'bangaluru'],
    'MAA': ['madras'],
    'CCU': ['calcutta'],
    'AMD': ['ahemdabad'],
    'COK': ['cochin'],
    'PNQ': ['poona'],
    'GAU': ['gauhati'],
    'TRV': ['thiruvananthapuram'],
    'VNS': ['banaras', 'benares'],
    'BBI': ['bhubaneshwar', 'bhubanesar'],
    'VTZ': ['vizag'],
    'IXE': ['mangaluru'],
    'MYQ': ['mysuru'],
    'TRZ': ['trichy'],
    'CCJ': ['calicut'],
    'BDQ': ['baroda'],
    'DED': ['dehra dun'],
    'GOI': ['panaji'],
    'HBX': ['hubballi'],
    'IXD': ['allahabad'],
}

AIRLINE_CODES = {
    '6E': 'IndiGo', 'AI': 'Air India', 'SG': 'SpiceJet', 'UK': 'Vistara',
    'G8': 'Go First', 'I5': 'AirAsia', 'QP': 'Akasa Air', 'IX': 'Air India Express',
}

MONTHS = {m: i for i, m in enumerate(
    ['JAN', 'FEB', 'MAR', 'APR', 'MAY', 'JUN', 'JUL', 'AUG', 'SEP', 'OCT', 'NOV', 'DEC'], start=1)}

_MONTH_PATTERN = r'(JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)[A-Z]*'

_pnr_re = re.compile(r'PNR[:\s]*([A-Z0-9]{6})\b|PNR([A-Z0-9]{6})', re.IGNORECASE)
_name_re = re.compile(r'(?:MR|MRS|MS|DR)\.\s*([A-Z][A-Za-z]+(?:[ \t]+[A-Z][A-Za-z]+){0,3})', re.IGNORECASE)
_seat_included_re = re.compile(r'(\d{1,2}[A-F])\s*Included', re.IGNORECASE)
_seat_adult_re = re.compile(r'Adult\s*(\d{1,2}[A-F])\b', re.IGNORECASE)
_seat_label_re = re.compile(r'SEAT[:\s]*(\d{1,2}[A-F])\b', re.IGNORECASE)
_airport_time_re = re.compile(
    r'\b({})\s*\n?\s*(\d{{1,2}}):(\d{{2}})\s*(hrs|am|pm)?'.format('|'.join(AIRPORT_CODES)), re.IGNORECASE)
_route_re = re.compile(
    r'([A-Za-z][A-Za-z ]*?)\s*-\s*([A-Za-z][A-Za-z ]*?)\s*\n?\s*'
    r'(?:(?:MON|TUE|WED|THU|FRI|SAT|SUN)[A-Z]*[,\s]*)?(\d{1,2})\s*' + _MONTH_PATTERN + r'\s*(\d{4})?',
    re.IGNORECASE)
_flight_re = re.compile(r'\b(6E|AI|SG|UK|G8|I5|QP|IX)[-\s]?(\d{2,4})(?=\d?[hH]\s*\d+[mM]|\b|[^0-9])')
_time_re = re.compile(r'(\d{1,2}):(\d{2})\s*(AM|PM)?', re.IGNORECASE)


class Journey:
    """One flight segment read from a ticket."""
    FIELDS = (
        'pnr', 'airline', 'flight_number', 'departure_city', 'departure_airport', 'departure_date',
        'departure_time', 'arrival_city', 'arrival_airport', 'arrival_time', 'seat_number', 'passenger_name')

    def __init__(self, **kwargs):
        for field in self.FIELDS:
            setattr(self, field, kwargs.get(field) or None)

    def __repr__(self):
        return '<Journey {} {}-{} {}>'.format(
            self.flight_number, self.departure_airport or self.departure_city,
            self.arrival_airport or self.arrival_city, self.departure_date)

    @property
    def filled_fields(self):
        """How many of the eight fields we score on were found."""
        return len([v for v in [
            self.pnr,
            self.flight_number,
            self.departure_city or self.departure_airport,
            self.arrival_city or self.arrival_airport,
            self.departure_date,
            self.departure_time,
            self.arrival_time,
            self.seat_number,
        ] if v])

    def to_dict(self):
        return {field: getattr(self, field) for field in self.FIELDS}

    def booking_details(self):
        """The fields TravelItinerary.apply_booking() understands."""
        return {
            'pnr': self.pnr,
            'flight_number': self.flight_number,
            'airline': self.airline,
            'departure_time': self.departure_time,
            'arrival_time': self.arrival_time,
            'seat': self.seat_number,
        }


def levenshtein(a, b):
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(previous[j - 1] if ca == cb else 1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def normalize_city(city):
    """
    Splits "Chennai (MAA)" into ("chennai", "maa").  Whitespace, including
    the non-breaking spaces PDFs like to emit, is collapsed.
    """
    city = city or ''
    match = re.search(r'\(([A-Za-z]{3})\)', city)
    code = match.group(1).lower() if match else ''
    name = re.sub(r'\s*\([A-Za-z]{3}\)\s*', ' ', city)
    name = re.sub(r'\s+', ' ', name.replace(' ', ' ')).strip().lower()
    return name, code


def code_for_city(city):
    """Returns the airport code for a city name (allowing small misspellings), or ''."""
    name, code = normalize_city(city)
    if code and code.upper() in AIRPORT_CODES:
        return code.upper()
    if name.upper() in AIRPORT_CODES:
        return name.upper()
    for airport, known in AIRPORT_CODES.items():
        candidates = [known.lower()] + CITY_ALIASES.get(airport, [])
        for candidate in candidates:
            if name == candidate or (len(name) >= 5 and levenshtein(candidate, name) <= 2):
                return airport
    return ''


def cities_match(requested, extracted, extracted_airport=''):
    """
    Whether a requested city and a city read off a ticket are the same place.
    A missing value on either side counts as a match, since there's nothing
    to disagree with.
    """
    if not requested or not extracted:
        return True

    req_name, req_code = normalize_city(requested)
    ext_name, ext_code = normalize_city(extracted)
    ext_airport = (extracted_airport or '').strip().lower()

    if req_name == ext_name:
        return True
    if req_code and req_code in (ext_airport, ext_name, ext_code):
        return True
    if ext_airport and req_name == ext_airport:
        return True
    if req_name in ext_name or ext_name in req_name:
        return True
    if len(req_name) >= 6 and len(ext_name) >= 6 and levenshtein(req_name, ext_name) <= 2:
        return True

    extracted_values = [v for v in (ext_airport, ext_name, ext_code) if v]
    requested_values = [v for v in (req_code, req_name) if v]
    for airport, known in AIRPORT_CODES.items():
        code = airport.lower()
        names = [known.lower()] + CITY_ALIASES.get(airport, [])
        if code in extracted_values and any(n in r or r in n for n in names for r in requested_values):
            return True
        if code in requested_values and any(n in e or e in n for n in names for e in extracted_values):
            return True
    return False


def to_24_hour(value):
    """Converts "2:05 PM" to "14:05"; anything we can't read comes back unchanged."""
    match = _time_re.search(value or '')
    if not match:
        return value
    hours, minutes, period = int(match.group(1)), match.group(2), (match.group(3) or '').upper()
    if period == 'PM' and hours != 12:
        hours += 12
    elif period == 'AM' and hours == 12:
        hours = 0
    return '{:02d}:{}'.format(hours, minutes)


def parse_date(value, default_year=None):
    """
    Accepts DD/MM/YYYY, DD-MM-YYYY, "DD Mon YYYY" and ISO dates, returning an
    ISO date string or None.  Dates without a year get `default_year`
    (the current year in the event timezone by default).
    """
    if isinstance(value, (date, datetime)):
        return value.strftime('%Y-%m-%d')
    value = (value or '').strip()
    if not value:
        return None

    match = re.match(r'^(\d{4})-(\d{1,2})-(\d{1,2})', value)
    if match:
        year, month, day = match.groups()
    else:
        match = re.search(r'(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})', value)
        if match:
            day, month, year = match.groups()
        else:
            match = re.search(r'(\d{1,2})\s*' + _MONTH_PATTERN + r'\s*(\d{2,4})?', value, re.IGNORECASE)
            if not match:
                return None
            day, month, year = match.group(1), MONTHS[match.group(2).upper()[:3]], match.group(3)

    year = str(year or default_year or localized_now().year)
    if len(year) == 2:
        year = '20' + year
    try:
        return date(int(year), int(month), int(day)).strftime('%Y-%m-%d')
    except ValueError:
        return None


def _minutes(hhmm):
    hours, minutes = hhmm.split(':')
    return int(hours) * 60 + int(minutes)


def _normalize_text(text):
    text = (text or '').replace('\r\n', '\n')
    text = re.sub('[  -​  　]', ' ', text)
    text = re.sub('[–—]', '-', text)
    return re.sub(r'[ \t]+', ' ', text)


def _find_pnrs(upper):
    pnrs = []
    for match in _pnr_re.finditer(upper):
        pnr = match.group(1) or match.group(2)
        if pnr not in [p for p, _ in pnrs]:
            pnrs.append((pnr, match.start()))
    return pnrs


def _find_seats(text, upper):
    seats = []
    for pattern in (_seat_included_re, _seat_adult_re, _seat_label_re):
        for match in pattern.finditer(text):
            seat = match.group(1).upper()
            if seat not in AIRLINE_CODES and seat not in seats:
                seats.append(seat)

    # "IYYI6A" is a PNR, not seat 6A
    pnr_suffixes = {m.group(0)[-2:] for m in re.finditer(r'[A-Z]{4}\d[A-F]', upper)}
    return [seat for seat in seats if seat not in pnr_suffixes]


def _find_airport_times(text):
    times = []
    for match in _airport_time_re.finditer(text):
        hours, period = int(match.group(2)), (match.group(4) or '').lower()
        if period == 'pm' and hours < 12:
            hours += 12
        elif period == 'am' and hours == 12:
            hours = 0
        times.append((match.group(1).upper(), '{:02d}:{}'.format(hours, match.group(3)), match.start()))
    return times


def _find_flights(upper):
    return [('{}-{}'.format(m.group(1), m.group(2)), m.start()) for m in _flight_re.finditer(upper)]


def _fallback_journey(text, upper, pnrs, seats, passenger_name):
    """For tickets without a recognisable route header: take airports and times in the order they appear."""
    positions = []
    for code in AIRPORT_CODES:
        match = re.search(r'\b{}(?:\b|\d)'.format(code), upper)
        if match:
            positions.append((match.start(), code))
    airports = [code for _, code in sorted(positions)]

    flights = _find_flights(upper)
    times = [to_24_hour(m.group(0)) for m in _time_re.finditer(text)]
    day_match = re.search(
        r'(?:MON|TUE|WED|THU|FRI|SAT|SUN)[A-Z]*[,\s]+\d{1,2}\s+' + _MONTH_PATTERN + r'(?:\s+\d{4})?', upper) \
        or re.search(r'\d{1,2}\s+' + _MONTH_PATTERN + r'\s+\d{4}', upper) \
        or re.search(r'\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}', upper)

    flight_number = flights[0][0] if flights else None
    return Journey(
        pnr=pnrs[0][0] if pnrs else None,
        airline=AIRLINE_CODES.get(flight_number.split('-')[0]) if flight_number else None,
        flight_number=flight_number,
        departure_airport=airports[0] if airports else None,
        departure_city=AIRPORT_CODES.get(airports[0]) if airports else None,
        arrival_airport=airports[1] if len(airports) > 1 else None,
        arrival_city=AIRPORT_CODES.get(airports[1]) if len(airports) > 1 else None,
        departure_date=parse_date(re.sub(r'^[A-Z]+[,\s]+', '', day_match.group(0))) if day_match else None,
        departure_time=times[0] if times else None,
        arrival_time=times[1] if len(times) > 1 else None,
        seat_number=seats[0] if seats else None,
        passenger_name=passenger_name)


def parse_journeys(text):
    """
    Returns every Journey we can find in the text of a ticket, in the order
    they appear.  A round trip booked on one ticket gives two journeys.
    """
    text = _normalize_text(text)
    upper = text.upper()
    if not text.strip():
        return []

    pnrs = _find_pnrs(upper)
    name_match = _name_re.search(text)
    passenger_name = name_match.group(1).strip() if name_match else None
    seats = _find_seats(text, upper)
    airport_times = _find_airport_times(text)
    flights = _find_flights(upper)

    routes = []
    for match in _route_re.finditer(text):
        city1, city2 = match.group(1).strip(), match.group(2).strip()
        routes.append({
            'index': match.start(),
            'city1': city1,
            'city2': city2,
            'date': parse_date('{} {} {}'.format(match.group(3), match.group(4), match.group(5) or '')),
            'from_code': code_for_city(city1),
            'to_code': code_for_city(city2),
        })
    routes = [r for r in routes if r['from_code'] or r['to_code']] or routes

    journeys = []
    for i, route in enumerate(routes):
        start = route['index']
        end = routes[i + 1]['index'] if i + 1 < len(routes) else len(text)
        previous = routes[i - 1]['index'] if i > 0 else 0

        flight = next((number for number, index in flights if start < index < end), None)

        segment_pnrs = [pnr for pnr, index in pnrs if start < index < end]
        if segment_pnrs:
            pnr = segment_pnrs[0]
        elif len(pnrs) > i:
            pnr = pnrs[i][0]
        else:
            pnr = pnrs[0][0] if pnrs else None

        # some layouts print the times after the route header, some before
        after = [(code, t) for code, t, index in airport_times if start < index < end]
        before = [(code, t) for code, t, index in airport_times if previous < index < start]

        def time_for(code):
            for candidates in (after, before):
                for airport, time in candidates:
                    if code and airport == code:
                        return time

        journeys.append(Journey(
            pnr=pnr,
            airline=AIRLINE_CODES.get(flight.split('-')[0]) if flight else None,
            flight_number=flight,
            departure_city=AIRPORT_CODES.get(route['from_code'], route['city1']),
            departure_airport=route['from_code'],
            departure_date=route['date'],
            departure_time=time_for(route['from_code']),
            arrival_city=AIRPORT_CODES.get(route['to_code'], route['city2']),
            arrival_airport=route['to_code'],
            arrival_time=time_for(route['to_code']),
            seat_number=seats[i] if i < len(seats) else None,
            passenger_name=passenger_name))

    if not journeys:
        journeys.append(_fallback_journey(text, upper, pnrs, seats, passenger_name))

    for journey in journeys:
        if journey.departure_time and journey.arrival_time \
                and _minutes(journey.arrival_time) < _minutes(journey.departure_time):
            log.debug('Discarding times for {} which arrives before it departs', journey)
            journey.departure_time = journey.arrival_time = None

    return journeys


def match_journey(journey, requested):
    """
    Compares a journey with a requested leg (a dict with from_city, to_city
    and date, as returned by TravelItinerary.requested_leg) and returns a
    list of discrepancies, each a dict of field, expected and found.
    """
    discrepancies = []
    if requested.get('from_city') and journey.departure_city \
            and not cities_match(requested['from_city'], journey.departure_city, journey.departure_airport):
        discrepancies.append({
            'field': 'From',
            'expected': requested['from_city'],
            'found': journey.departure_city or journey.departure_airport})

    if requested.get('to_city') and journey.arrival_city \
            and not cities_match(requested['to_city'], journey.arrival_city, journey.arrival_airport):
        discrepancies.append({
            'field': 'To',
            'expected': requested['to_city'],
            'found': journey.arrival_city or journey.arrival_airport})

    requested_date = parse_date(requested.get('date'))
    if requested_date and journey.departure_date and requested_date != journey.departure_date:
        discrepancies.append({'field': 'Date', 'expected': requested_date, 'found': journey.departure_date})

    return discrepancies


def _leg_result(journey=None, discrepancies=()):
    return {'journey': journey, 'matched': journey is not None and not discrepancies,
            'discrepancies': list(discrepancies)}


def _best_match(journeys, requested, claimed):
    best = None
    for journey in journeys:
        if journey in claimed:
            continue
        discrepancies = match_journey(journey, requested)
        if best is None or len(discrepancies) < len(best[1]):
            best = (journey, discrepancies)
    if best is None:
        return _leg_result()

    journey, discrepancies = best
    # a single wrong date is usually a rebooked flight, not the wrong trip
    if len(discrepancies) <= 1 and all(d['field'] == 'Date' for d in discrepancies):
        return _leg_result(journey)
    result = _leg_result(journey, discrepancies)
    result['matched'] = False
    return result


def match_legs(journeys, onward=None, return_=None, trip_type=None):
    """
    Pairs journeys read from a ticket with the requested onward and return
    legs.  Returns {"onward": leg, "return": leg} where each leg is a dict of
    journey, matched and discrepancies.

    One-way tickets only have one journey to place: it goes to the onward
    leg if it matches that (or if there's nothing else to compare it with),
    otherwise to the return leg if it matches that.  Failing both, it's
    assigned to the onward leg along with what didn't match.

    Round trip and multi city tickets first take exact matches for each leg,
    then fall back to the closest remaining journey.
    """
    trip_type = trip_type or c.ROUND_TRIP
    result = {'onward': _leg_result(), 'return': _leg_result()}
    if not journeys:
        return result

    if trip_type == c.ONE_WAY:
        journey = journeys[0]
        onward_discrepancies = match_journey(journey, onward) if onward else []
        if not onward_discrepancies:
            result['onward'] = _leg_result(journey)
        elif return_ and not match_journey(journey, return_):
            result['return'] = _leg_result(journey)
        else:
            result['onward'] = _leg_result(journey, onward_discrepancies)
        return result

    claimed = set()
    for journey in journeys:
        if onward and not result['onward']['matched'] and not match_journey(journey, onward):
            result['onward'] = _leg_result(journey)
            claimed.add(journey)
        elif return_ and not result['return']['matched'] and not match_journey(journey, return_):
            result['return'] = _leg_result(journey)
            claimed.add(journey)

    if onward and not result['onward']['matched']:
        result['onward'] = _best_match(journeys, onward, claimed)
        if result['onward']['matched']:
            claimed.add(result['onward']['journey'])
    if return_ and not result['return']['matched']:
        result['return'] = _best_match(journeys, return_, claimed)

    return result


def confidence(result, trip_type=None):
    """
    A rough 0-95 score of how much we trust an extraction: each leg scores
    1.5 per field found if it matched the request and 0.5 if it didn't, out
    of 8 fields per leg, rounded half up.  The return leg only counts for
    round trips.
    """
    score = total = 0
    legs = ['onward'] + (['return'] if trip_type == c.ROUND_TRIP else [])
    for leg in legs:
        journey = result[leg]['journey']
        if journey:
            score += journey.filled_fields * (1.5 if result[leg]['matched'] else 0.5)
            total += 8
    if not total:
        return 0
    percent = (Decimal(str(score)) * 100 / total).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return min(95, int(percent))


def serialize_result(result):
    return {
        leg: dict(value, journey=value['journey'].to_dict() if value['journey'] else None)
        for leg, value in result.items()
    }


def match_itinerary(journeys, itinerary):
    """Runs match_legs() against the legs a TravelItinerary asked for."""
    return match_legs(
        journeys,
        onward=itinerary.requested_leg('onward'),
        return_=itinerary.requested_leg('return') if itinerary.has_return else None,
        trip_type=itinerary.trip_type)
