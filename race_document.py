"""
Document-level extraction

Race facts from the filename, the reference time that decides whether a
race is scored on time or on pace, and the column locator used for
tabular header lines.
"""

import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Iterable, List

from race_fields import (
    RACE_TIME_THRESHOLD_MINUTES,
    find_durations,
)
from race_models import DocumentMetadata, RaceType

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Filename metadata
# ---------------------------------------------------------------------------

_LEGACY_DATE_RE = re.compile(r'^(\d{8})(.*)$')
_CLASSEMENT_DISTANCE_RE = re.compile(r'^(\d+(?:[.,]\d+)?)km$', re.IGNORECASE)


def _parse_distance(text: str) -> Optional[float]:
    text = text.strip().lower()
    if text.endswith('km'):
        text = text[:-2]
    try:
        return float(text.replace(',', '.'))
    except ValueError:
        return None


def _parse_date(text: str, fmt: str):
    try:
        return datetime.strptime(text, fmt).date()
    except ValueError:
        return None


def parse_filename_metadata(filename) -> DocumentMetadata:
    """Race facts encoded in a results filename.

    Recognised conventions:
      - ``2024-05-12_Jogging des Fraises_Huy_CJPL_10,5.pdf``
      - ``20240512Grand Prix de SeraingGC.pdf``
      - ``Classement-10km-Jogging de Nandrin.pdf``

    Fields a convention does not carry stay None.
    """
    stem = Path(str(filename)).stem
    meta = DocumentMetadata(file_stem=stem)

    parts = stem.split('_')
    if len(parts) >= 2:
        meta.race_date = _parse_date(parts[0], '%Y-%m-%d')
        meta.race_name = parts[1].strip() or None
        if len(parts) >= 3:
            meta.location = parts[2].strip() or None
        if len(parts) >= 4:
            meta.category = parts[3].strip() or None
        if len(parts) > 4:
            meta.distance_km = _parse_distance(parts[-1])
        return meta

    m = _LEGACY_DATE_RE.match(stem)
    if m:
        race_date = _parse_date(m.group(1), '%Y%m%d')
        if race_date:
            meta.race_date = race_date
            name = m.group(2).strip()
            if name.endswith('GC'):
                meta.category = 'GC'
                name = name[:-2].strip()
            meta.race_name = name or None
            return meta

    if stem.lower().startswith('classement-'):
        pieces = stem.split('-')[1:]
        rest = []
        for piece in pieces:
            dm = _CLASSEMENT_DISTANCE_RE.match(piece.strip())
            if dm and meta.distance_km is None:
                meta.distance_km = _parse_distance(dm.group(1))
            else:
                rest.append(piece)
        meta.race_name = '-'.join(rest).strip() or None
        return meta

    log.debug('No filename convention matched %r', stem)
    return meta


# ---------------------------------------------------------------------------
# Reference time / race type
# ---------------------------------------------------------------------------

REFERENCE_MARKER_RE = re.compile(r'TREF|temps\s+de\s+r[eé]f[eé]rence', re.IGNORECASE)


def extract_reference_time(lines: Iterable[str]) -> Optional[timedelta]:
    """First duration on the first line carrying a reference-time marker"""
    for line in lines:
        m = REFERENCE_MARKER_RE.search(line)
        if not m:
            continue
        for d, _ in find_durations(line[m.end():]) or find_durations(line):
            if d.total_seconds() > 1:
                return d
    return None


def classify_race_type(reference: Optional[timedelta]) -> RaceType:
    """TIME_PER_KM when the reference is a pace, RACE_TIME otherwise"""
    if reference is not None and reference < timedelta(minutes=RACE_TIME_THRESHOLD_MINUTES):
        return RaceType.TIME_PER_KM
    return RaceType.RACE_TIME


# ---------------------------------------------------------------------------
# Column locator
# ---------------------------------------------------------------------------

COLUMN_KEYWORDS: Dict[str, List[str]] = {
    'position': ['pl.', 'pl', 'place', 'pos.', 'pos', 'classement', 'clas.', 'rang', 'rank'],
    'bib': ['dossard', 'dos.', 'dos', 'bib', 'n°', 'num'],
    'name': ['nom', 'name', 'participant', 'coureur'],
    'first_name': ['prénom', 'prenom', 'first name'],
    'sex': ['sexe', 'sex', 'genre', 's.'],
    'position_sex': ['pl./s.', 'pl. sexe', 'pl.sexe', 'clas.sexe', 'clas. sexe', 'pos.sexe',
                     'classement sexe', 'cl.s', 'pos/sexe'],
    'category': ['catégorie', 'categorie', 'catég.', 'categ.', 'category', 'cat.', 'cat°', 'cat'],
    'position_category': ['pl./c.', 'pl./cat.', 'pl. cat', 'pl.cat', 'clas. cat', 'clas.cat',
                          'pos.cat', 'classement cat', 'cl.cat', 'pos/cat', 'pl/cat',
                          'p.ca.', 'p.ca', 'p ca', 'p/ca'],
    'team': ['club', 'équipe', 'equipe', 'team', 'société', 'societe'],
    'speed': ['vitesse', 'speed', 'km/h', 'vit.'],
    'time': ['temps', 'time', 'chrono'],
    'pace': ['min/km', 't/km', 'temps/km', 'allure', 'tempo', 'pace'],
}


def _boundary_ok(text: str, start: int, end: int) -> bool:
    if start > 0 and text[start - 1].isalpha():
        return False
    if text[end - 1].isalpha() and end < len(text) and text[end].isalpha():
        return False
    return True


def detect_columns(header_line: str, keywords: Dict[str, List[str]] = None) -> Dict[str, int]:
    """Map canonical column keys to their text offset in a header line.

    Longer keywords claim their span first, so 'pl./s.' is never read as
    'pl.'. A keyword only counts on word boundaries. Keys whose keywords
    are absent are left out.

    >>> detect_columns('Pl.  Nom            Temps')
    {'position': 0, 'name': 5, 'time': 20}
    """
    keywords = keywords or COLUMN_KEYWORDS
    text = header_line.lower()
    candidates = sorted(
        ((kw.lower(), key) for key, kws in keywords.items() for kw in kws),
        key=lambda c: -len(c[0]),
    )
    claimed = []
    columns = {}
    for kw, key in candidates:
        if key in columns:
            continue
        start = text.find(kw)
        while start != -1:
            end = start + len(kw)
            overlaps = any(start < c_end and c_start < end for c_start, c_end in claimed)
            if not overlaps and _boundary_ok(text, start, end):
                columns[key] = start
                claimed.append((start, end))
                break
            start = text.find(kw, start + 1)
    return dict(sorted(columns.items(), key=lambda kv: kv[1]))


def column_value(line: str, columns: Dict[str, int], key: str) -> Optional[str]:
    """Text of one column: from its offset up to the next column's offset"""
    start = columns.get(key)
    if start is None or start >= len(line):
        return None
    following = [off for off in columns.values() if off > start]
    end = min(following) if following else len(line)
    value = line[start:end].strip()
    return value or None
