"""
Participant name handling

Cleans the name fragment of a result row, splits it into first name and
surname, and matches it against the club roster.
"""

import json
import logging
import re
from typing import Optional, List, NamedTuple, Tuple

from race_fields import (
    DURATION_RE,
    is_category_code,
    strip_diacritics,
)
from race_models import RosterEntry

log = logging.getLogger(__name__)

NAME_PARTICLES = {'de', 'van', 'von', 'del', 'der', 'den', 'le', 'la', 'du', "d'", 'di', 'da', 'dos', 'das'}
NAME_PREFIXES = {'mr', 'mrs', 'ms', 'dr', 'prof'}
NAME_SUFFIXES = {'jr', 'sr', 'ii', 'iii', 'iv'}
MAX_NAME_TOKENS = 4

_BIB_RE = re.compile(r'^\d{1,4}$')
_LONE_GENDER_RE = re.compile(r'^[MFHDmfhd]$')


class ResolvedName(NamedTuple):
    first_name: str
    last_name: str
    is_member: bool
    entry: Optional[RosterEntry] = None


def normalize_for_comparison(text: str) -> str:
    """Accent, case, hyphen and spacing insensitive form of a name"""
    text = strip_diacritics(text or '').replace('-', ' ')
    return re.sub(r'\s+', ' ', text).strip().lower()


def is_all_caps(token: str) -> bool:
    letters = [c for c in token if c.isalpha()]
    return len(letters) > 1 and all(c.isupper() for c in letters)


def is_valid_name_part(part: str) -> bool:
    return bool(part) and any(c.isalpha() for c in part) and not part.replace(' ', '').isdigit()


# ---------------------------------------------------------------------------
# Cleaning
# ---------------------------------------------------------------------------

def clean_extracted_name(text: str) -> str:
    """Keep the leading name tokens of a row remainder.

    Leading bib numbers are skipped. Reading stops at the first token that
    starts with a digit (numbers, times, speeds), at a category code (V1, SEN,
    ESPG) or at a lone gender letter, and at most four tokens are kept.

    >>> clean_extracted_name('1234 DUPONT Jean V1 12 42:10')
    'DUPONT Jean'
    """
    tokens = (text or '').split()
    i = 0
    while i < len(tokens) and _BIB_RE.match(tokens[i]):
        i += 1
    kept = []
    for tok in tokens[i:]:
        bare = tok.strip(';')
        if not any(c.isalnum() for c in bare):
            continue
        core = bare.strip(',.')
        if core[:1].isdigit() or is_category_code(core):
            break
        if _LONE_GENDER_RE.match(core):
            break
        kept.append(bare)
        if len(kept) >= MAX_NAME_TOKENS:
            break
    return ' '.join(kept)


_TEAM_PHRASE_RE = re.compile(r'\b(?:team|equipe|équipe|club)\b.*$', re.IGNORECASE)
_CODE_RE = re.compile(r'\b[A-Z]{1,4}\d+\b')
_KMH_RE = re.compile(r'\d+(?:[.,]\d+)?\s*km/h', re.IGNORECASE)
_PUNCT_RE = re.compile(r"[^\w\s'\-]")


def _clean_name_text(text: str) -> str:
    text = DURATION_RE.sub(' ', text or '')
    text = _KMH_RE.sub(' ', text)
    text = _TEAM_PHRASE_RE.sub(' ', text)
    text = _CODE_RE.sub(' ', text)
    text = _PUNCT_RE.sub(' ', text)
    text = re.sub(r'\b\d+\b', ' ', text)
    tokens = [t for t in text.split() if not _LONE_GENDER_RE.match(t) or t.islower()]
    return ' '.join(tokens)


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------

def _is_particle(token: str) -> bool:
    return token.lower() in NAME_PARTICLES


def split_name(raw: str) -> Tuple[str, str]:
    """Heuristic (first_name, last_name) split for a name nobody recognised.

    ALL CAPS tokens are the surname, particles (de, van, du...) open the
    surname, 'SURNAME, First' is honoured, and otherwise the first token is
    the first name.

    >>> split_name('DUPONT Jean')
    ('Jean', 'DUPONT')
    >>> split_name('Marie van der BERG')
    ('Marie', 'van der BERG')
    """
    text = (raw or '').strip()
    if ',' in text:
        last, _, first = text.partition(',')
        last, first = _clean_name_text(last), _clean_name_text(first)
        if last and first:
            return first, last

    parts = [p for p in _clean_name_text(text).split() if not p.isdigit()]
    while parts and parts[0].lower().rstrip('.') in NAME_PREFIXES:
        parts.pop(0)
    while parts and parts[-1].lower().rstrip('.') in NAME_SUFFIXES:
        parts.pop()

    if not parts:
        return 'Unknown', 'Unknown'
    if len(parts) == 1:
        return parts[0], parts[0]
    if len(parts) == 2:
        p0, p1 = parts
        if is_all_caps(p0) and not is_all_caps(p1):
            return p1, p0
        if is_all_caps(p1) and not is_all_caps(p0):
            return p0, p1
        if _is_particle(p0):
            return p1, f'{p0} {p1}'
        return p0, p1

    caps = [is_all_caps(p) for p in parts]
    if not all(caps):
        if caps[-1]:
            # trailing run of capitals and particles is the surname
            start = len(parts) - 1
            while start > 1 and (caps[start - 1] or _is_particle(parts[start - 1])):
                start -= 1
            return ' '.join(parts[:start]), ' '.join(parts[start:])
        if caps[0]:
            end = 1
            while end < len(parts) - 1 and (caps[end] or _is_particle(parts[end])):
                end += 1
            return ' '.join(parts[end:]), ' '.join(parts[:end])

    for i in range(1, len(parts)):
        if _is_particle(parts[i]):
            return ' '.join(parts[:i]), ' '.join(parts[i:])
    return parts[0], ' '.join(parts[1:])


# ---------------------------------------------------------------------------
# Roster matching
# ---------------------------------------------------------------------------

def find_roster_matches(raw: str, roster: List[RosterEntry]) -> List[RosterEntry]:
    """Roster entries whose first name and surname both occur in raw.

    Each entry is tried accent-insensitively, then with its original spelling
    when the surname carries diacritics. Duplicates are dropped, first kept.
    """
    if not raw or not roster:
        return []
    normalized = normalize_for_comparison(raw)
    folded = raw.casefold()
    matches = []
    seen = set()
    for entry in roster:
        if not entry.first_name or not entry.last_name:
            continue
        hit = (normalize_for_comparison(entry.last_name) in normalized
               and normalize_for_comparison(entry.first_name) in normalized)
        if not hit and strip_diacritics(entry.last_name) != entry.last_name:
            hit = (entry.last_name.casefold() in folded
                   and entry.first_name.casefold() in folded)
        if not hit:
            continue
        key = (entry.first_name, entry.last_name, entry.email)
        if key not in seen:
            seen.add(key)
            matches.append(entry)
    return matches


def resolve_name(raw: str, roster: List[RosterEntry]) -> ResolvedName:
    """Roster identity for raw when a member matches, heuristic split otherwise"""
    matches = find_roster_matches(raw, roster)
    if matches:
        entry = matches[0]
        if len(matches) > 1:
            log.debug('%d roster entries match %r, using %s %s',
                      len(matches), raw, entry.first_name, entry.last_name)
        return ResolvedName(entry.first_name, entry.last_name, True, entry)
    first, last = split_name(raw)
    return ResolvedName(first, last, False)


def load_roster(path) -> List[RosterEntry]:
    """Read a JSON member list (FirstName, LastName, Email, IsChallenger)"""
    with open(path, encoding='utf-8') as f:
        data = json.load(f)
    roster = []
    for item in data:
        last = (item.get('LastName') or '').strip()
        if not last:
            continue
        roster.append(RosterEntry(
            first_name=(item.get('FirstName') or '').strip(),
            last_name=last,
            email=(item.get('Email') or '').strip(),
            is_challenger=bool(item.get('IsChallenger') or False),
        ))
    log.info('Loaded %d roster entries from %s', len(roster), path)
    return roster
