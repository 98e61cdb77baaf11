"""
Primitive field parsers for race results

Durations, speeds, positions and the token classification used to pick
sex / age category / companion positions out of a free-text result row.
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, List, Tuple

RACE_TIME_THRESHOLD_MINUTES = 15
MIN_RACE_TIME_MINUTES = 10
MAX_SPEED_KMH = 30.0

RACE_TIME = 'race_time'
PACE = 'pace'


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

DURATION_RE = re.compile(r'(?<![\d:])(\d{1,2}:\d{2}:\d{2}|\d{1,2}:\d{2})(?![\d:])')
_DURATION_FULL_RE = re.compile(r'^(\d{1,2}):(\d{2})(?::(\d{2}))?(?:[.,]\d+)?$')


def parse_duration(text: str) -> Optional[timedelta]:
    """Parse h:mm:ss, hh:mm:ss, m:ss or mm:ss into a timedelta.

    Fractions of a second are dropped. Returns None for anything else.

    >>> parse_duration('1:02:03')
    datetime.timedelta(seconds=3723)
    >>> parse_duration('4:35')
    datetime.timedelta(seconds=275)
    """
    if not text:
        return None
    m = _DURATION_FULL_RE.match(text.strip())
    if not m:
        return None
    a, b, c = m.group(1), m.group(2), m.group(3)
    if c is None:
        minutes, seconds = int(a), int(b)
        if seconds >= 60:
            return None
        return timedelta(minutes=minutes, seconds=seconds)
    hours, minutes, seconds = int(a), int(b), int(c)
    if minutes >= 60 or seconds >= 60:
        return None
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def find_durations(text: str) -> List[Tuple[timedelta, Tuple[int, int]]]:
    """All valid durations in text with their (start, end) spans, in order"""
    found = []
    for m in DURATION_RE.finditer(text or ''):
        d = parse_duration(m.group(1))
        if d is not None:
            found.append((d, m.span()))
    return found


def classify_duration(d: timedelta) -> str:
    """RACE_TIME for 15 minutes and over, PACE below"""
    if d >= timedelta(minutes=RACE_TIME_THRESHOLD_MINUTES):
        return RACE_TIME
    return PACE


def split_durations(durations) -> Tuple[Optional[timedelta], Optional[timedelta]]:
    """First race-time class duration and first pace class duration"""
    race_time = pace = None
    for d in durations:
        if classify_duration(d) == RACE_TIME:
            if race_time is None:
                race_time = d
        elif pace is None:
            pace = d
    return race_time, pace


def format_duration(d: timedelta, with_hours: bool = True) -> str:
    total = int(d.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if with_hours:
        return f'{hours:02d}:{minutes:02d}:{seconds:02d}'
    return f'{hours * 60 + minutes:02d}:{seconds:02d}'


def is_representative_race_time(d: Optional[timedelta]) -> bool:
    """False for missing, zero, or suspiciously short race times"""
    if not d:
        return False
    return d >= timedelta(minutes=MIN_RACE_TIME_MINUTES)


# ---------------------------------------------------------------------------
# Speed
# ---------------------------------------------------------------------------

SPEED_RE = re.compile(r'(?<![\d:.,])(\d+[.,]\d+)\s*(?:km/h)?(?![\d:])', re.IGNORECASE)
_SPEED_TOKEN_RE = re.compile(r'^\d+[.,]\d+(?:km/h)?$', re.IGNORECASE)


def parse_speed(text: str) -> Optional[float]:
    """Parse a speed in km/h, repairing a dropped decimal point.

    Integers of four digits or more carry two implied decimals, three digit
    values and values between 30 and 100 carry one. Anything still outside
    [0, 30] is discarded.

    >>> parse_speed('1725'), parse_speed('17,25'), parse_speed('175')
    (17.25, 17.25, 17.5)
    """
    if not text:
        return None
    s = text.strip().lower().replace(',', '.').replace('km/h', '')
    s = re.sub(r'[^\d.\-]', '', s)
    if s.count('.') > 1:
        head, _, tail = s.partition('.')
        s = head + '.' + tail.replace('.', '')
    try:
        value = float(s)
    except ValueError:
        return None
    if value >= 1000:
        value /= 100
    elif value >= 100:
        value /= 10
    elif value > MAX_SPEED_KMH:
        value /= 10
    if value < 0 or value > MAX_SPEED_KMH:
        return None
    return round(value, 2)


def is_speed_token(token: str) -> bool:
    return bool(_SPEED_TOKEN_RE.match(token.strip()))


def is_duration_token(token: str) -> bool:
    return parse_duration(token) is not None


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

LEADING_POSITION_RE = re.compile(r'^\s*(\d{1,5})(?:\.\s*|\s+|$)')
_POSITION_CELL_RE = re.compile(r'^(\d{1,5})(?:\.0*)?\.?$')


def parse_leading_position(line: str) -> Tuple[Optional[int], str]:
    """Split '12. DUPONT Jean ...' into (12, 'DUPONT Jean ...')"""
    m = LEADING_POSITION_RE.match(line or '')
    if not m:
        return None, line or ''
    position = int(m.group(1))
    if position <= 0:
        return None, line
    return position, line[m.end():]


def parse_position(text) -> Optional[int]:
    """Position from a lone cell value such as '3', '3.' or '3.0'"""
    if text is None:
        return None
    m = _POSITION_CELL_RE.match(str(text).strip())
    if not m:
        return None
    value = int(m.group(1))
    return value if value > 0 else None


# ---------------------------------------------------------------------------
# Sex and age category tokens
# ---------------------------------------------------------------------------

_CATEGORY_CODE_PATTERNS = [
    re.compile(p) for p in (
        r'^S[HMFD]$', r'^SEN[HFD]?$', r'^HOM$', r'^DAM$',
        r'^V[1-4]$', r'^VET[1-3H]?$',
        r'^[DA][1-3]$', r'^AINEE[1-3]?$', r'^VETF$',
        r'^ESP[HFGD]?$', r'^ES[HFGD]$', r'^JUN[HFD]?$', r'^CAD[HFD]?$',
        r'^SCO$', r'^BEN$', r'^PUP$', r'^MIN$', r'^MOINS\d{2}$',
        r'^M\d{2}$', r'^W\d{2}$',
        r'^HAN$', r'^HAND$', r'^REC$', r'^FUN$', r'^WAL$',
    )
]

_CATEGORY_PHRASE_PATTERNS = [
    re.compile(p) for p in (
        r'^SENIOR\s+[HFD]$', r'^VETERAN\s+[1-4]$', r'^AINEE\s+[1-3]$',
        r'^ESPOIR\s+[HFGD]?$', r'^ESP\s+[HFGD]$', r'^JUNIOR\s+[HFD]?$',
        r'^CADET\s+[HFD]?$', r'^MASTER\s+\d{2}\+?$', r'^WOMEN\s+\d{2}\+?$',
        r'^MOINS\d{2}\s+[HFD]$',
    )
]

_SMALL_NUMBER_RE = re.compile(r'^\d{1,4}$')


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize('NFKD', text)
    return ''.join(c for c in decomposed if not unicodedata.combining(c))


def _category_key(text: str) -> str:
    return strip_diacritics(text).upper().strip().rstrip('.')


def is_category_code(token: str) -> bool:
    """True for short age category codes such as V1, SH, ESPG, M45.

    Codes longer than two characters must be written in capitals so that
    first names like 'Ben' are not mistaken for a category.
    """
    token = token.strip().rstrip('.')
    if not token:
        return False
    if len(token) > 2 and token != token.upper():
        return False
    key = _category_key(token)
    return any(p.match(key) for p in _CATEGORY_CODE_PATTERNS)


def is_category_phrase(text: str) -> bool:
    """True for two-word categories such as 'Senior H' or 'Veteran 2'"""
    key = _category_key(text)
    return any(p.match(key) for p in _CATEGORY_PHRASE_PATTERNS)


def sex_from_token(token: str) -> Optional[str]:
    """Single letter gender markers: M/H are men, F/D are women"""
    t = token.strip().upper()
    if t in ('M', 'H'):
        return 'M'
    if t in ('F', 'D'):
        return 'F'
    return None


@dataclass
class CategoryInfo:
    sex: Optional[str] = None
    category: Optional[str] = None
    position_by_sex: Optional[int] = None
    position_by_category: Optional[int] = None


def extract_category_info(text: str, info: Optional[CategoryInfo] = None) -> CategoryInfo:
    """Scan free text for sex, age category and their companion positions.

    A bare small integer becomes the category position when a category has
    already been read, otherwise the sex position when a sex has been read.
    Durations and speeds are skipped. Fields already set on ``info`` are kept.
    """
    info = info or CategoryInfo()
    tokens = (text or '').split()
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        bare = tok.rstrip('.')

        if _SMALL_NUMBER_RE.match(bare) and int(bare) < 500:
            if info.category and info.position_by_category is None:
                info.position_by_category = int(bare)
            elif info.sex and info.position_by_sex is None:
                info.position_by_sex = int(bare)
            i += 1
            continue

        if is_duration_token(tok) or is_speed_token(tok):
            i += 1
            continue

        if len(bare) == 1 and bare.isalpha() and sex_from_token(bare):
            if info.sex is None and tok.isupper():
                info.sex = sex_from_token(bare)
            i += 1
            continue

        if info.category is None and i + 1 < len(tokens):
            nxt = tokens[i + 1]
            phrase = f'{tok} {nxt}'
            if is_category_phrase(phrase):
                info.category = phrase
                i += 2
                continue
            if len(nxt) == 1 and nxt.isdigit() and is_category_code(tok + nxt):
                info.category = tok + nxt
                i += 2
                continue

        if info.category is None and is_category_code(tok):
            info.category = bare
        i += 1
    return info
