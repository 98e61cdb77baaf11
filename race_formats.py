"""
Results document formats

One parser per known timing-company / organiser layout, tried in priority
order by select_parser(). Parsers hold no per-document state: header
detection is carried in an immutable HeaderPending / HeaderFound value that
parse_line() receives and returns.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, List, Dict, Tuple, Union

from race_document import COLUMN_KEYWORDS, column_value, detect_columns
from race_fields import (
    SPEED_RE,
    CategoryInfo,
    extract_category_info,
    find_durations,
    is_category_code,
    is_category_phrase,
    parse_leading_position,
    parse_speed,
    sex_from_token,
    split_durations,
    strip_diacritics,
)
from race_models import DocumentMetadata, ParsedParticipantResult, RosterEntry
from race_names import (
    clean_extracted_name,
    is_valid_name_part,
    resolve_name,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Header state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeaderPending:
    """No column header seen yet; rows are read heuristically"""


@dataclass(frozen=True)
class HeaderFound:
    """Column offsets taken from the last header line"""
    columns: Dict[str, int] = field(default_factory=dict)


HeaderState = Union[HeaderPending, HeaderFound]
HEADER_PENDING = HeaderPending()


# ---------------------------------------------------------------------------
# Shared row heuristics
# ---------------------------------------------------------------------------

TEAM_BRACKET_RE = re.compile(r'\(([^)]*)\)|\[([^\]]*)\]')
TEAM_KEYWORD_RE = re.compile(
    r'\b(?:club|[ée]quipe|team)\s*[:\-]\s*(\S.*?)(?=\s{2,}|$)', re.IGNORECASE)
MULTI_SPACE_RE = re.compile(r'\s{2,}')
NOT_DISCLOSED_RE = re.compile(r'^non\s+communiqu[ée]', re.IGNORECASE)
LEADING_BIB_RE = re.compile(r'^\s*(\d{1,5})\s+')


@dataclass
class RowFields:
    """Working copy of a free-text row while fields are taken out of it"""
    position: int
    rest: str
    race_time: Optional[timedelta] = None
    pace: Optional[timedelta] = None
    speed_kmh: Optional[float] = None
    team: Optional[str] = None
    name_source: Optional[str] = None
    info: CategoryInfo = field(default_factory=CategoryInfo)


def _cut(text: str, start: int, end: int) -> str:
    # keep a double space so multi-space column splits still see the gap
    return text[:start] + '  ' + text[end:]


def read_row(line: str) -> Optional[RowFields]:
    """Leading position, durations and speed of a free-text row.

    Durations and speed are removed from the remaining text.
    """
    position, rest = parse_leading_position(line.strip())
    if position is None:
        return None
    durations = find_durations(rest)
    race_time, pace = split_durations(d for d, _ in durations)
    for _, (start, end) in reversed(durations):
        rest = _cut(rest, start, end)
    speed = None
    m = SPEED_RE.search(rest)
    if m:
        speed = parse_speed(m.group(1))
        rest = _cut(rest, *m.span())
    return RowFields(position, rest, race_time, pace, speed)


def take_bracket_team(row: RowFields) -> None:
    if row.team:
        return
    m = TEAM_BRACKET_RE.search(row.rest)
    if m:
        team = (m.group(1) or m.group(2) or '').strip()
        row.rest = _cut(row.rest, *m.span())
        row.team = team or None


def take_keyword_team(row: RowFields) -> None:
    """'Club: AC Huy' / 'Equipe: Les Fous' style team mentions"""
    if row.team:
        return
    m = TEAM_KEYWORD_RE.search(row.rest)
    if m:
        row.team = m.group(1).strip() or None
        row.rest = _cut(row.rest, *m.span())


def _looks_like_team(text: str) -> bool:
    if not any(c.isalpha() for c in text):
        return False
    if NOT_DISCLOSED_RE.match(text):
        return False
    return not (is_category_code(text) or is_category_phrase(text) or sex_from_token(text))


def take_last_column_team(row: RowFields) -> None:
    """Use the last multi-space separated column as the team"""
    if row.team:
        return
    columns = [c for c in MULTI_SPACE_RE.split(row.rest.strip()) if c]
    if len(columns) < 2:
        return
    name_cols = columns[:-1]
    if name_cols and name_cols[0].strip().isdigit():
        name_cols = name_cols[1:]
    if not name_cols:
        return
    last = columns[-1]
    if NOT_DISCLOSED_RE.match(last):
        row.rest = '  '.join(columns[:-1])
        return
    if _looks_like_team(last):
        row.team = last
        row.rest = '  '.join(columns[:-1])


def _without_tokens(text: str, tokens: List[str]) -> str:
    remaining = text.split()
    for tok in tokens:
        if tok in remaining:
            remaining.remove(tok)
    return ' '.join(remaining)


def _fallback_name(text: str) -> str:
    words = [t for t in text.split()
             if any(c.isalpha() for c in t) and not is_category_code(t) and not sex_from_token(t)]
    return ' '.join(words[:4])


def build_result(position: int, raw_name: str, roster: List[RosterEntry],
                 **fields) -> Optional[ParsedParticipantResult]:
    """Resolve the name and assemble a result, or None without a usable name"""
    if not raw_name:
        return None
    first, last, is_member, _ = resolve_name(raw_name, roster)
    if not (is_valid_name_part(first) and is_valid_name_part(last)):
        return None
    return ParsedParticipantResult(
        position=position,
        first_name=first,
        last_name=last,
        full_name_raw=raw_name,
        is_member=is_member,
        **fields,
    )


def finish_row(row: RowFields, roster: List[RosterEntry]) -> Optional[ParsedParticipantResult]:
    """Name and category scan on what is left of the row"""
    source = row.name_source if row.name_source is not None else row.rest
    raw_name = clean_extracted_name(source) or _fallback_name(source)
    info = extract_category_info(_without_tokens(row.rest, raw_name.split()), row.info)
    return build_result(
        row.position, raw_name, roster,
        race_time=row.race_time,
        pace=row.pace,
        team=row.team,
        speed_kmh=row.speed_kmh,
        sex=info.sex,
        position_by_sex=info.position_by_sex,
        age_category=info.category,
        position_by_category=info.position_by_category,
    )


# ---------------------------------------------------------------------------
# Column rows
# ---------------------------------------------------------------------------

def parse_column_row(line: str, roster: List[RosterEntry],
                     columns: Dict[str, int]) -> Optional[ParsedParticipantResult]:
    """Read a data row by slicing it at the header's column offsets"""
    def value(key):
        return column_value(line, columns, key)

    position = None
    pos_text = value('position')
    if pos_text:
        position, _ = parse_leading_position(pos_text)
    if position is None:
        position, _ = parse_leading_position(line.strip())
    if position is None:
        return None

    name = value('name')
    first = value('first_name')
    if not name and not first:
        return None
    name = clean_extracted_name(name or '') or (name or '')
    if first:
        raw_name = f'{first} {name}'.strip()
        first_name, last_name, is_member, _ = resolve_name(raw_name, roster)
        if not is_member:
            first_name, last_name = first, name or first
    else:
        raw_name = name
        first_name, last_name, is_member, _ = resolve_name(raw_name, roster)
    if not (is_valid_name_part(first_name) and is_valid_name_part(last_name)):
        return None

    race_time, pace = split_durations(d for d, _ in find_durations(value('time') or ''))
    pace_text = value('pace')
    if pace_text and pace is None:
        _, pace = split_durations(d for d, _ in find_durations(pace_text))
    if race_time is None:
        race_time, line_pace = split_durations(d for d, _ in find_durations(line))
        pace = pace or line_pace

    speed = None
    speed_text = value('speed')
    if speed_text:
        m = SPEED_RE.search(speed_text)
        speed = parse_speed(m.group(1) if m else speed_text)

    team = value('team')
    if team and NOT_DISCLOSED_RE.match(team):
        team = None

    sex_text = value('sex')
    sex = sex_from_token(sex_text[0]) if sex_text else None
    category = value('category')
    position_by_sex = position_by_category = None
    if value('position_sex'):
        position_by_sex, _ = parse_leading_position(value('position_sex'))
    if value('position_category'):
        position_by_category, _ = parse_leading_position(value('position_category'))

    return ParsedParticipantResult(
        position=position,
        first_name=first_name,
        last_name=last_name,
        full_name_raw=raw_name,
        race_time=race_time,
        pace=pace,
        team=team,
        speed_kmh=speed,
        sex=sex,
        position_by_sex=position_by_sex,
        age_category=category,
        position_by_category=position_by_category,
        is_member=is_member,
    )


def _has_any(text: str, keywords) -> bool:
    return any(k in text for k in keywords)


def _count(text: str, keywords) -> int:
    return sum(1 for k in keywords if k in text)


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

class FormatParser:
    """A results layout: detection plus line-by-line row extraction"""
    name = 'Base'
    column_keywords: Dict[str, List[str]] = COLUMN_KEYWORDS

    def can_parse(self, text: str, metadata: DocumentMetadata) -> bool:
        raise NotImplementedError

    def initial_state(self) -> HeaderState:
        return HEADER_PENDING

    def parse_line(self, line: str, roster: List[RosterEntry],
                   state: HeaderState) -> Tuple[Optional[ParsedParticipantResult], HeaderState]:
        raise NotImplementedError

    def is_header(self, line: str) -> bool:
        return False

    def parse_layout_line(self, line, roster, state, heuristic):
        """Header-aware parsing shared by the tabular layouts.

        A header line (re)sets the column offsets and yields no row. Once a
        header is known rows are sliced by column, and a row the slicer
        cannot read goes to the free-text heuristic.
        """
        if parse_leading_position(line.strip())[0] is None and self.is_header(line):
            columns = detect_columns(line, self.column_keywords)
            if 'position' in columns and ('name' in columns or 'first_name' in columns):
                if not isinstance(state, HeaderFound) or state.columns != columns:
                    log.debug('%s header columns: %s', self.name, columns)
                return None, HeaderFound(columns)
            return None, state
        if isinstance(state, HeaderFound):
            result = parse_column_row(line, roster, state.columns)
            if result is not None:
                return result, state
        return heuristic(line, roster), state


class StandardParser(FormatParser):
    """Generic fallback: position, times, speed, bracketed team, name"""
    name = 'Standard'

    def can_parse(self, text, metadata):
        return True

    def parse_line(self, line, roster, state):
        row = read_row(line)
        if row is None:
            return None, state
        take_bracket_team(row)
        return finish_row(row, roster), state


class CrossCupParser(FormatParser):
    name = 'CrossCup'

    def can_parse(self, text, metadata):
        t = text.lower()
        if _has_any(t, ('cjpl', 'crosscup', 'cross cup')):
            return True
        return 'cjpl' in (metadata.category or '').lower()

    def parse_line(self, line, roster, state):
        row = read_row(line)
        if row is None:
            return None, state
        take_bracket_team(row)
        take_keyword_team(row)
        return finish_row(row, roster), state


class GrandChallengeParser(FormatParser):
    """Grand Challenge (Seraing, Blanc Gravier): name and club in spaced columns"""
    name = 'GrandChallenge'
    _gc_re = re.compile(r'(?:^|[^a-z])gc(?:[^a-z]|$)')

    def can_parse(self, text, metadata):
        t = text.lower()
        if re.search(r'grande?\s+challenge', t):
            return True
        if _has_any(t, ('seraing', 'blanc gravier', 'blancgravier')):
            return True
        if (metadata.category or '').upper() == 'GC':
            return True
        return bool(self._gc_re.search(metadata.file_stem.lower()))

    def parse_line(self, line, roster, state):
        row = read_row(line)
        if row is None:
            return None, state
        take_bracket_team(row)
        columns = [c for c in MULTI_SPACE_RE.split(row.rest.strip()) if c]
        if columns:
            row.name_source = columns[0]
            if len(columns) > 1 and _looks_like_team(columns[-1]):
                row.team = row.team or columns[-1]
                row.rest = '  '.join(columns[:-1])
        return finish_row(row, roster), state


ZATOPEK_CATEGORY_RE = re.compile(
    r'\b(seniors?|veterans?\s*[1-4]|espoirs?\s+(?:garcons|filles)|dames|ainees?\s*[1-4])\b'
    r'(?:\s+(\d{1,3})\b)?')
ZATOPEK_CATEGORIES = {
    'senior': ('Séniors', 'M'),
    'veteran 1': ('Vétérans 1', 'M'),
    'veteran 2': ('Vétérans 2', 'M'),
    'veteran 3': ('Vétérans 3', 'M'),
    'veteran 4': ('Vétérans 4', 'M'),
    'espoir garcons': ('Espoirs Garçons', 'M'),
    'espoir filles': ('Espoirs Filles', 'F'),
    'dames': ('Dames', 'F'),
    'ainee 1': ('Ainées 1', 'F'),
    'ainee 2': ('Ainées 2', 'F'),
    'ainee 3': ('Ainées 3', 'F'),
    'ainee 4': ('Ainées 4', 'F'),
}
PCA_RE = re.compile(r'\bP\.?\s*\.?\s*ca\.?\s*[:\-]?\s*(\d{1,3})\b', re.IGNORECASE)


def _zatopek_key(label: str) -> str:
    words = re.sub(r'([a-z])(\d)', r'\1 \2', label).split()
    if words[0] != 'dames':
        words[0] = words[0].rstrip('s')
    return ' '.join(words)


class ZatopekParser(FormatParser):
    """Challenge La Meuse / Zatopek lists with P.Ca category places"""
    name = 'Zatopek'

    def can_parse(self, text, metadata):
        t = text.lower()
        names = f'{metadata.file_stem} {metadata.race_name or ""}'.lower()
        if not ('zatopek' in t or 'zatopek' in names or _has_any(t, ('p.ca', 'p ca'))):
            return False
        return _count(t, ('pos', 'nom', 'temps', 'catégorie')) >= 3

    def parse_line(self, line, roster, state):
        row = read_row(line)
        if row is None:
            return None, state

        m = PCA_RE.search(row.rest)
        if m:
            row.info.position_by_category = int(m.group(1))
            row.rest = _cut(row.rest, *m.span())

        normalized = strip_diacritics(row.rest).lower()
        m = ZATOPEK_CATEGORY_RE.search(normalized)
        if m:
            label, sex = ZATOPEK_CATEGORIES.get(_zatopek_key(m.group(1)), (m.group(1), None))
            row.info.category = label
            row.info.sex = row.info.sex or sex
            if m.group(2) and row.info.position_by_category is None:
                row.info.position_by_category = int(m.group(2))
            if len(normalized) == len(row.rest):
                row.rest = _cut(row.rest, *m.span())

        take_keyword_team(row)
        take_bracket_team(row)
        take_last_column_team(row)
        return finish_row(row, roster), state


GP_CATEGORY_RE = re.compile(r'\b(HOM|DAM|SEN|V[1-4]|A[1-3]|D[1-3]|ESP[HFGD]?|ES[HFGD])\s+(\d{1,3})\b')
GP_COMMA_NAME_RE = re.compile(r"^\s*([A-ZÀ-Ýa-zà-ÿ'\- ]+?),\s*([A-ZÀ-Ýa-zà-ÿ'\-]+(?:[ \-][A-ZÀ-Ýa-zà-ÿ'\-]+)?)")


class GlobalPacingParser(FormatParser):
    name = 'GlobalPacing'

    def can_parse(self, text, metadata):
        t = text.lower()
        if _has_any(t, ('global pacing', 'globalpacing', 'www.globalpacing')):
            return True
        sex_col = 'clas.sexe' in t
        cat_col = 'clas.cat' in t
        if sex_col and cat_col:
            return True
        if (sex_col or cat_col) and 'pl.' in t:
            return True
        stem = metadata.file_stem.lower()
        return stem.startswith('classement') and 'km' in stem and 'pl.' in t and 'nom' in t

    def is_header(self, line):
        t = line.lower()
        return _has_any(t, ('clas.sexe', 'clas.cat')) or ('pl.' in t and 'nom' in t)

    def parse_line(self, line, roster, state):
        return self.parse_layout_line(line, roster, state, self._parse_free_text)

    def _parse_free_text(self, line, roster):
        row = read_row(line)
        if row is None:
            return None
        m = LEADING_BIB_RE.match(row.rest)
        if m:
            row.rest = row.rest[m.end():]

        m = GP_CATEGORY_RE.search(row.rest)
        if m:
            row.info.category = m.group(1)
            row.info.position_by_category = int(m.group(2))
            if m.group(1) in ('HOM', 'DAM'):
                row.info.sex = 'M' if m.group(1) == 'HOM' else 'F'
            row.rest = _cut(row.rest, *m.span())

        take_bracket_team(row)
        take_keyword_team(row)
        m = GP_COMMA_NAME_RE.match(row.rest)
        if m:
            row.name_source = f'{m.group(1).strip()}, {m.group(2).strip()}'
            row.rest = row.rest[m.end():]
            leftover = [c for c in MULTI_SPACE_RE.split(row.rest.strip()) if c]
            if leftover and not row.team and _looks_like_team(leftover[-1]):
                row.team = leftover[-1]
                row.rest = '  '.join(leftover[:-1])
            return finish_row(row, roster)
        take_last_column_team(row)
        return finish_row(row, roster)


class GoalTimingParser(FormatParser):
    name = 'GoalTiming'
    column_keywords = dict(COLUMN_KEYWORDS, position=['rank', 'pl.', 'pos', 'place'])

    def can_parse(self, text, metadata):
        t = text.lower()
        if _has_any(t, ('goal timing', 'goaltiming', 'www.goaltiming')):
            return True
        if 'rank' in t and _has_any(t, ('pl/cat', 't/km')):
            return True
        stem = metadata.file_stem.lower()
        named = _has_any(stem, ('gc', 'grand challenge', 'seraing', 'gravier'))
        return named and 'rank' in t

    def is_header(self, line):
        t = line.lower()
        return 'rank' in t and _has_any(t, ('nom', 'name'))

    def parse_line(self, line, roster, state):
        return self.parse_layout_line(line, roster, state, self._parse_free_text)

    def _parse_free_text(self, line, roster):
        row = read_row(line)
        if row is None:
            return None
        take_keyword_team(row)
        take_bracket_team(row)
        return finish_row(row, roster)


class OtopParser(FormatParser):
    name = 'Otop'

    def can_parse(self, text, metadata):
        t = text.lower()
        if ('pl./s.' in t and 'pl./c.' in t) or _has_any(t, ('otop timing', 'www.otop.be')):
            return True
        if all(k in t for k in ('catég.', 'prénom', 'dos', 'sexe')):
            return True
        cjpl = 'cjpl' in (metadata.category or '').lower()
        return cjpl and 'nom' in t and 'temps' in t

    def is_header(self, line):
        t = line.lower()
        if 'pl./s.' in t and 'pl./c.' in t:
            return True
        return 'nom' in t and _count(t, ('pl.', 'dos', 'sexe', 'prénom', 'temps')) >= 2

    def parse_line(self, line, roster, state):
        return self.parse_layout_line(line, roster, state, self._parse_free_text)

    def _parse_free_text(self, line, roster):
        row = read_row(line)
        if row is None:
            return None
        take_bracket_team(row)
        return finish_row(row, roster)


class FrenchColumnParser(FormatParser):
    """French tabular lists: Pl. Dos Nom ... Vitesse Temps min/km"""
    name = 'FrenchColumn'
    _position_markers = ('pl.', 'pl ', 'p.', 'p ', 'pos', 'place', 'rang', 'p.ca', 'p ca', 'p/ca')

    def can_parse(self, text, metadata):
        t = text.lower()
        if _has_any(t, ('clas.sexe', 'clas.cat', 'global pacing')):
            return False
        if re.match(r'^classement-\d+(?:[.,]\d+)?km', metadata.file_stem.lower()):
            return False
        return (_has_any(t, ('pl.', 'pl ')) and 'dos' in t and 'nom' in t
                and _has_any(t, ('vitesse', 'temps')) and 'min/km' in t)

    def is_header(self, line):
        t = line.lower()
        return 'nom' in t and _has_any(t, self._position_markers)

    def parse_line(self, line, roster, state):
        return self.parse_layout_line(line, roster, state, self._parse_free_text)

    def _parse_free_text(self, line, roster):
        """Column-less rows: position, optional bib, name, team, speed, times"""
        row = read_row(line)
        if row is None:
            return None
        take_bracket_team(row)
        columns = [c for c in MULTI_SPACE_RE.split(row.rest.strip()) if c]
        if columns and columns[0].isdigit() and int(columns[0]) < 10000:
            columns = columns[1:]
        if columns:
            row.name_source = columns[0]
            if len(columns) > 1 and _looks_like_team(columns[-1]):
                row.team = row.team or columns[-1]
                row.rest = '  '.join(columns[:-1])
        return finish_row(row, roster)


# most specific first; StandardParser always matches
PARSERS: List[FormatParser] = [
    ZatopekParser(),
    GlobalPacingParser(),
    GoalTimingParser(),
    OtopParser(),
    FrenchColumnParser(),
    CrossCupParser(),
    GrandChallengeParser(),
]
FALLBACK_PARSER = StandardParser()


def select_parser(text: str, metadata: DocumentMetadata,
                  candidates: List[FormatParser] = None) -> FormatParser:
    """First candidate that recognises the document, else the fallback"""
    for parser in (PARSERS if candidates is None else candidates):
        if parser.can_parse(text, metadata):
            log.info('Using %s parser for %s', parser.name, metadata.file_stem or 'document')
            return parser
    log.warning('No specific format matched %s, using %s parser',
                metadata.file_stem or 'document', FALLBACK_PARSER.name)
    return FALLBACK_PARSER
