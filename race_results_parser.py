"""
Race Results Parser

Parses running race result documents (organiser PDFs and spreadsheets)
into normalized participant results. The layout of each PDF is detected
from its text and handled by the matching parser in race_formats;
spreadsheets are searched row by row for roster members.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path
from typing import Optional, List, Dict, Tuple, Iterable

import pandas as pd
import pdfplumber

from race_document import (
    classify_race_type,
    detect_columns,
    extract_reference_time,
    parse_filename_metadata,
    REFERENCE_MARKER_RE,
)
from race_fields import (
    find_durations,
    format_duration,
    is_representative_race_time,
    parse_duration,
    parse_leading_position,
    parse_position,
    parse_speed,
    sex_from_token,
    split_durations,
)
from race_formats import FALLBACK_PARSER, HEADER_PENDING, FormatParser, select_parser
from race_models import (
    DocumentMetadata,
    DocumentUnreadable,
    ParsedDocument,
    ParsedParticipantResult,
    ParseStats,
    RaceType,
    RosterEntry,
)
from race_names import find_roster_matches, is_valid_name_part, split_name

log = logging.getLogger(__name__)

MAX_ROWS = 6000
MAX_COLUMNS = 12
MAX_LOGGED_FAILURES = 10
MIN_EXPECTED_RESULTS = 5

PDF_EXTENSIONS = ('.pdf',)
SPREADSHEET_EXTENSIONS = ('.xlsx', '.xlsm', '.xls', '.csv')

DISQUALIFIED_MARKERS = ('dsq', 'disqualified', 'disqualifié', 'dnf', 'dns', 'abandon')
DISQUALIFIED_RE = re.compile('|'.join(re.escape(m) for m in DISQUALIFIED_MARKERS), re.IGNORECASE)
HEADER_KEYWORDS = (
    'classement', 'classification', 'résultats', 'results', 'place', 'position',
    'nom', 'name', 'temps', 'time', 'vitesse', 'speed', 'équipe', 'team', 'club',
    'pos', 'pl', 'pl.', 'rang', 'dos', 'min/km', 'cat', 'catégorie', 'p.ca',
    'dossard', 'bib',
)
ORPHAN_TIME_RE = re.compile(r'^(\d{1,2}:\d{2}:\d{2}|\d{1,2}:\d{2})\s*(\d+)?$')
_NUMBERED_LINE_RE = re.compile(r'^(\d{1,4})[\s.,]')


# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------

def is_disqualified_line(line: str) -> bool:
    return DISQUALIFIED_RE.search(line) is not None


def looks_like_header(line: str) -> bool:
    """Probable title / column header line (used for diagnostics only)"""
    if not _NUMBERED_LINE_RE.match(line):
        return True
    t = line.lower()
    if 'pl.' in t and 'nom' in t and 'temps' in t:
        return True
    return sum(1 for k in HEADER_KEYWORDS if k in t) >= 3


def is_orphaned_time(line: str) -> bool:
    return bool(ORPHAN_TIME_RE.match(line))


# ---------------------------------------------------------------------------
# Text (PDF family) parsing
# ---------------------------------------------------------------------------

def parse_lines(lines: Iterable[str], parser: FormatParser, roster: List[RosterEntry],
                stats: ParseStats) -> List[ParsedParticipantResult]:
    """Run every line through the parser, counting what happens to it"""
    results = []
    state = parser.initial_state()
    pending_time = None

    for raw in lines:
        stats.total_lines += 1
        line = raw.rstrip()
        stripped = line.strip()
        if not stripped:
            stats.blank_lines += 1
            continue
        if is_disqualified_line(stripped):
            # parsed for the record, dropped when results are finalized
            stats.disqualified_skips += 1
            result, state = parser.parse_line(DISQUALIFIED_RE.sub('   ', line), roster, state)
            if result is not None:
                result.is_disqualified = True
                results.append(result)
            continue
        if is_orphaned_time(stripped):
            # time printed on its own line belongs to the next row
            pending_time = stripped
            continue
        if pending_time:
            line = f'{line}  {pending_time}'
            pending_time = None

        result, state = parser.parse_line(line, roster, state)
        if result is not None:
            stats.successes += 1
            results.append(result)
        elif looks_like_header(stripped):
            stats.header_skips += 1
        else:
            stats.failures += 1
            if stats.failures <= MAX_LOGGED_FAILURES:
                log.debug('Could not parse line %d: %r', stats.total_lines, stripped)
    return results


def deduplicate_results(results: List[ParsedParticipantResult]) -> List[ParsedParticipantResult]:
    """One result per position, keeping the most complete row"""
    best: Dict[int, ParsedParticipantResult] = {}
    for r in results:
        kept = best.get(r.position)
        if kept is None or r.completeness() > kept.completeness():
            best[r.position] = r
    return [best[p] for p in sorted(best)]


def is_representative(result: ParsedParticipantResult) -> bool:
    """False for a zero or implausibly short race time; rows without one are kept"""
    if result.race_time is None:
        return True
    return is_representative_race_time(result.race_time)


def backfill_winner_from_lines(lines: List[str]) -> Optional[ParsedParticipantResult]:
    """Re-read the position 1 row of a document as a non-member result"""
    for raw in lines:
        stripped = raw.strip()
        if not stripped or is_disqualified_line(stripped):
            continue
        position, _ = parse_leading_position(stripped)
        if position != 1:
            continue
        result, _ = FALLBACK_PARSER.parse_line(stripped, [], HEADER_PENDING)
        if result is not None and (result.race_time or result.pace):
            result.is_member = False
            return result
    return None


def _finalize(results: List[ParsedParticipantResult], stats: ParseStats,
              backfill) -> List[ParsedParticipantResult]:
    results = [r for r in results if not r.is_disqualified]
    unique = deduplicate_results(results)
    stats.duplicates_removed = len(results) - len(unique)
    kept = [r for r in unique if is_representative(r)]
    stats.filtered_out = len(unique) - len(kept)
    if not any(r.position == 1 for r in kept):
        winner = backfill()
        if winner is not None:
            log.info('Winner row added: %s %s', winner.first_name, winner.last_name)
            kept.append(winner)
    return sorted(kept, key=lambda r: r.position)


def _log_summary(doc: ParsedDocument) -> None:
    s = doc.stats
    log.info('%s: %d results (%s parser, %s) from %d lines; %d failed, '
             '%d headers, %d disqualified, %d duplicates, %d filtered',
             doc.source or 'document', len(doc.results), doc.format_name, doc.race_type.value,
             s.total_lines, s.failures, s.header_skips, s.disqualified_skips,
             s.duplicates_removed, s.filtered_out)
    if doc.results:
        filled = {
            'race_time': sum(1 for r in doc.results if r.race_time),
            'pace': sum(1 for r in doc.results if r.pace),
            'team': sum(1 for r in doc.results if r.team),
            'speed': sum(1 for r in doc.results if r.speed_kmh is not None),
            'category': sum(1 for r in doc.results if r.age_category),
            'members': sum(1 for r in doc.results if r.is_member),
        }
        log.debug('Field coverage: %s', filled)
    if s.successes < MIN_EXPECTED_RESULTS and s.total_lines - s.blank_lines > 20:
        log.warning('Only %d results parsed from %d lines of %s', s.successes,
                    s.total_lines - s.blank_lines, doc.source or 'document')


def parse_text(text: str, roster: List[RosterEntry] = None,
               metadata: DocumentMetadata = None, source: str = '',
               parser: FormatParser = None) -> ParsedDocument:
    """Parse the extracted text of a results document"""
    roster = roster or []
    metadata = metadata or DocumentMetadata()
    lines = text.splitlines()[:MAX_ROWS]

    reference = extract_reference_time(lines)
    race_type = classify_race_type(reference)
    parser = parser or select_parser(text, metadata)

    stats = ParseStats()
    results = parse_lines(lines, parser, roster, stats)
    results = _finalize(results, stats, lambda: backfill_winner_from_lines(lines))

    doc = ParsedDocument(
        source=source,
        file_type='pdf',
        format_name=parser.name,
        metadata=metadata,
        race_type=race_type,
        reference_time=reference,
        results=results,
        stats=stats,
    )
    _log_summary(doc)
    return doc


def extract_pdf_text(pdf_path) -> str:
    """Text of every page, laid out so column offsets line up"""
    if not Path(pdf_path).is_file():
        raise DocumentUnreadable(f'No such file: {pdf_path}')
    try:
        with pdfplumber.open(pdf_path) as pdf:
            pages = [page.extract_text(layout=True) or '' for page in pdf.pages]
    except Exception as exc:
        raise DocumentUnreadable(f'Cannot read PDF {pdf_path}: {exc}') from exc
    return '\n'.join(pages)


# ---------------------------------------------------------------------------
# Spreadsheet family parsing
# ---------------------------------------------------------------------------

def read_spreadsheet(path) -> Dict[str, List[List[str]]]:
    """Cell text of every sheet, capped at MAX_ROWS x MAX_COLUMNS"""
    path = Path(path)
    if not path.is_file():
        raise DocumentUnreadable(f'No such file: {path}')
    try:
        if path.suffix.lower() == '.csv':
            frames = {path.stem: pd.read_csv(path, header=None, dtype=str, nrows=MAX_ROWS,
                                             sep=None, engine='python', encoding_errors='replace')}
        else:
            frames = pd.read_excel(path, sheet_name=None, header=None, dtype=str, nrows=MAX_ROWS)
    except Exception as exc:
        raise DocumentUnreadable(f'Cannot read spreadsheet {path}: {exc}') from exc

    sheets = {}
    for name, df in frames.items():
        df = df.iloc[:, :MAX_COLUMNS].fillna('')
        sheets[str(name)] = [[str(v).strip() for v in row] for row in df.values.tolist()]
    return sheets


def locate_cell_columns(cells: List[str]) -> Dict[str, int]:
    """Column keys of a header row, as cell indexes"""
    columns = {}
    for idx, cell in enumerate(cells[:MAX_COLUMNS]):
        for key in detect_columns(cell):
            columns.setdefault(key, idx)
    if columns.get('first_name') == columns.get('name'):
        columns.pop('first_name', None)
    return columns


def _find_header_row(rows: List[List[str]]) -> Tuple[int, Dict[str, int]]:
    for idx, cells in enumerate(rows[:10]):
        columns = locate_cell_columns(cells)
        if 'position' in columns and ('name' in columns or 'time' in columns):
            return idx, columns
    return 0, locate_cell_columns(rows[0]) if rows else {}


def _cell(cells: List[str], columns: Dict[str, int], key: str) -> str:
    idx = columns.get(key)
    if idx is None or idx >= len(cells):
        return ''
    return cells[idx]


def _raw_name(cells: List[str], columns: Dict[str, int]) -> str:
    name = ' '.join(v for v in (_cell(cells, columns, 'first_name'),
                                _cell(cells, columns, 'name')) if v)
    if name:
        return name
    start = columns.get('position', 0) + 1
    return ' '.join(c for c in cells[start:start + 2] if c and any(ch.isalpha() for ch in c))


def result_from_cells(cells: List[str], columns: Dict[str, int],
                      first_name: str, last_name: str, is_member: bool,
                      raw_name: str = '') -> Optional[ParsedParticipantResult]:
    """Build a result from one spreadsheet row"""
    position = parse_position(_cell(cells, columns, 'position'))
    if position is None and 'position' not in columns and cells:
        position = parse_position(cells[0])
    if position is None:
        return None

    race_time = pace = None
    time_cell = _cell(cells, columns, 'time')
    if time_cell:
        race_time, pace = split_durations(d for d, _ in find_durations(time_cell))
    pace_cell = _cell(cells, columns, 'pace')
    if pace_cell and pace is None:
        _, pace = split_durations(d for d, _ in find_durations(pace_cell))
    if race_time is None and pace is None:
        race_time, pace = split_durations(
            d for cell in cells for d, _ in find_durations(cell))

    sex_cell = _cell(cells, columns, 'sex')
    return ParsedParticipantResult(
        position=position,
        first_name=first_name,
        last_name=last_name,
        full_name_raw=raw_name or _raw_name(cells, columns),
        race_time=race_time,
        pace=pace,
        team=_cell(cells, columns, 'team') or None,
        speed_kmh=parse_speed(_cell(cells, columns, 'speed')),
        sex=sex_from_token(sex_cell[:1]) if sex_cell else None,
        position_by_sex=parse_position(_cell(cells, columns, 'position_sex')),
        age_category=_cell(cells, columns, 'category') or None,
        position_by_category=parse_position(_cell(cells, columns, 'position_category')),
        is_member=is_member,
    )


def backfill_winner_from_rows(sheets: Dict[str, List[List[str]]]) -> Optional[ParsedParticipantResult]:
    """Position 1 row of the first sheet that has one, as a non-member"""
    for rows in sheets.values():
        if not rows:
            continue
        header_idx, columns = _find_header_row(rows)
        pos_idx = columns.get('position', 0)
        for cells in rows[header_idx + 1:MAX_ROWS]:
            if pos_idx >= len(cells) or cells[pos_idx].strip() not in ('1', '1.', '1.0'):
                continue
            raw = _raw_name(cells, columns)
            first, last = split_name(raw)
            if not (is_valid_name_part(first) and is_valid_name_part(last)):
                continue
            return result_from_cells(cells, dict(columns, position=pos_idx),
                                     first, last, False, raw)
    return None


def parse_spreadsheet_rows(sheets: Dict[str, List[List[str]]], roster: List[RosterEntry] = None,
                           metadata: DocumentMetadata = None, source: str = '') -> ParsedDocument:
    """Roster-directed search of spreadsheet rows.

    Every row mentioning both the first name and surname of a roster member
    yields a member result; the winner is added when no member won.
    """
    roster = roster or []
    metadata = metadata or DocumentMetadata()
    all_lines = ['  '.join(cells) for rows in sheets.values() for cells in rows[:MAX_ROWS]]
    reference = extract_reference_time(all_lines)
    race_type = classify_race_type(reference)

    stats = ParseStats()
    results = []
    seen = set()
    for sheet_name, rows in sheets.items():
        if not rows:
            continue
        header_idx, columns = _find_header_row(rows)
        log.debug('Sheet %s header row %d columns: %s', sheet_name, header_idx, columns)
        for idx, cells in enumerate(rows[header_idx + 1:MAX_ROWS], start=header_idx + 1):
            stats.total_lines += 1
            row_text = '  '.join(c for c in cells if c)
            if not row_text:
                stats.blank_lines += 1
                continue
            if REFERENCE_MARKER_RE.search(row_text):
                stats.header_skips += 1
                continue
            if is_disqualified_line(row_text):
                stats.disqualified_skips += 1
                continue
            for entry in find_roster_matches(row_text, roster):
                key = (sheet_name, idx, entry.first_name, entry.last_name, entry.email)
                if key in seen:
                    continue
                result = result_from_cells(cells, columns, entry.first_name,
                                           entry.last_name, True)
                if result is None:
                    stats.failures += 1
                    continue
                seen.add(key)
                stats.successes += 1
                results.append(result)

    results = _finalize(results, stats, lambda: backfill_winner_from_rows(sheets))
    doc = ParsedDocument(
        source=source,
        file_type='spreadsheet',
        format_name='Spreadsheet',
        metadata=metadata,
        race_type=race_type,
        reference_time=reference,
        results=results,
        stats=stats,
    )
    _log_summary(doc)
    return doc


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def detect_file_type(path) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in PDF_EXTENSIONS:
        return 'pdf'
    if suffix in SPREADSHEET_EXTENSIONS:
        return 'spreadsheet'
    raise DocumentUnreadable(f'Unsupported document type: {path}')


def parse_race_document(path, roster: List[RosterEntry] = None,
                        file_type: str = None) -> ParsedDocument:
    """Parse a PDF or spreadsheet results file.

    file_type is 'pdf' or 'spreadsheet'; it is taken from the extension
    when omitted. Raises DocumentUnreadable for missing or corrupt files.
    """
    file_type = file_type or detect_file_type(path)
    metadata = parse_filename_metadata(path)
    if file_type == 'pdf':
        return parse_text(extract_pdf_text(path), roster, metadata, source=str(path))
    if file_type == 'spreadsheet':
        return parse_spreadsheet_rows(read_spreadsheet(path), roster, metadata, source=str(path))
    raise ValueError(f'Unknown file type: {file_type}')


def parse_documents(paths, roster: List[RosterEntry] = None, max_workers: int = 4
                    ) -> Tuple[Dict[str, ParsedDocument], Dict[str, DocumentUnreadable]]:
    """Parse several documents in parallel.

    Returns (documents, errors), both keyed by path.
    """
    documents = {}
    errors = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(parse_race_document, p, roster): str(p) for p in paths}
        for future in as_completed(futures):
            path = futures[future]
            try:
                documents[path] = future.result()
            except DocumentUnreadable as exc:
                log.error('%s', exc)
                errors[path] = exc
    return documents, errors


# ---------------------------------------------------------------------------
# Encoded results
# ---------------------------------------------------------------------------

def _text(value) -> str:
    return str(value).replace(';', ',')


def encode_result(result: ParsedParticipantResult, race_type: RaceType, result_id: int) -> str:
    """Semicolon delimited form of a result.

    >>> r = ParsedParticipantResult(3, 'Jean', 'DUPONT', race_time=timedelta(minutes=42, seconds=10))
    >>> encode_result(r, RaceType.RACE_TIME, 2)
    'TWINNER;2;DUPONT;Jean;RACETYPE;RACE_TIME;RACETIME;00:42:10;POS;3;ISMEMBER;0;'
    """
    marker = 'TMEM' if result.is_member else 'TWINNER'
    parts = [marker, str(result_id), _text(result.last_name), _text(result.first_name),
             'RACETYPE', race_type.value]
    if result.race_time is not None:
        parts += ['RACETIME', format_duration(result.race_time)]
    if result.pace is not None:
        parts += ['TIMEPERKM', format_duration(result.pace, with_hours=False)]
    parts += ['POS', str(result.position)]
    if result.team:
        parts += ['TEAM', _text(result.team)]
    if result.speed_kmh is not None:
        parts += ['SPEED', f'{result.speed_kmh:.2f}']
    if result.sex:
        parts += ['SEX', result.sex]
    if result.position_by_sex is not None:
        parts += ['POSITIONSEX', str(result.position_by_sex)]
    if result.age_category:
        parts += ['CATEGORY', _text(result.age_category)]
    if result.position_by_category is not None:
        parts += ['POSITIONCAT', str(result.position_by_category)]
    if result.full_name_raw:
        parts += ['FULLNAME', _text(result.full_name_raw)]
    parts += ['ISMEMBER', '1' if result.is_member else '0']
    return ';'.join(parts) + ';'


def decode_result(encoded: str) -> Tuple[int, RaceType, ParsedParticipantResult]:
    """Inverse of encode_result: (id, race type, result)"""
    tokens = encoded.split(';')
    if tokens and tokens[-1] == '':
        tokens.pop()
    if len(tokens) < 4 or tokens[0] not in ('TMEM', 'TWINNER') or (len(tokens) - 4) % 2:
        raise ValueError(f'Not an encoded result: {encoded!r}')
    fields = dict(zip(tokens[4::2], tokens[5::2]))
    if 'POS' not in fields:
        raise ValueError(f'Encoded result has no position: {encoded!r}')

    def optional_int(key):
        return int(fields[key]) if key in fields else None

    result = ParsedParticipantResult(
        position=int(fields['POS']),
        first_name=tokens[3],
        last_name=tokens[2],
        full_name_raw=fields.get('FULLNAME', ''),
        race_time=parse_duration(fields['RACETIME']) if 'RACETIME' in fields else None,
        pace=parse_duration(fields['TIMEPERKM']) if 'TIMEPERKM' in fields else None,
        team=fields.get('TEAM'),
        speed_kmh=float(fields['SPEED']) if 'SPEED' in fields else None,
        sex=fields.get('SEX'),
        position_by_sex=optional_int('POSITIONSEX'),
        age_category=fields.get('CATEGORY'),
        position_by_category=optional_int('POSITIONCAT'),
        is_member=fields.get('ISMEMBER') == '1',
    )
    return int(tokens[1]), RaceType(fields.get('RACETYPE', RaceType.RACE_TIME.value)), result


def encode_document(doc: ParsedDocument) -> List[Tuple[int, str]]:
    """(id, encoded result) pairs in position order, ids from 1"""
    return [(i, encode_result(r, doc.race_type, i)) for i, r in enumerate(doc.results, start=1)]


# ---------------------------------------------------------------------------
# DataFrame helpers
# ---------------------------------------------------------------------------

def _seconds(d: Optional[timedelta]) -> Optional[float]:
    return d.total_seconds() if d is not None else None


def results_to_dataframe(doc: ParsedDocument) -> pd.DataFrame:
    if not doc.results:
        return pd.DataFrame()
    rows = []
    for r in doc.results:
        row = asdict(r)
        row['race_time'] = format_duration(r.race_time) if r.race_time else None
        row['race_seconds'] = _seconds(r.race_time)
        row['pace'] = format_duration(r.pace, with_hours=False) if r.pace else None
        row['pace_seconds'] = _seconds(r.pace)
        row['race_type'] = doc.race_type.value
        rows.append(row)
    df = pd.DataFrame(rows)
    return df.sort_values('position').reset_index(drop=True)


def get_member_results(df): return df[df['is_member']].copy()


def summarize_document(doc: ParsedDocument) -> dict:
    return {
        'format': doc.format_name,
        'race_type': doc.race_type.value,
        'reference_time': format_duration(doc.reference_time) if doc.reference_time else None,
        'total_results': len(doc.results),
        'members': sum(1 for r in doc.results if r.is_member),
        'teams': len({r.team for r in doc.results if r.team}),
        'lines': doc.stats.total_lines,
        'failures': doc.stats.failures,
        'disqualified': doc.stats.disqualified_skips,
    }


if __name__ == "__main__":
    import sys
    from race_names import load_roster

    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')
    if len(sys.argv) < 2:
        print("usage: race_results_parser.py RESULTS_FILE [ROSTER.json]")
        sys.exit(1)
    doc_path = sys.argv[1]
    members = load_roster(sys.argv[2]) if len(sys.argv) > 2 else []

    print(f"Parsing: {doc_path}")
    document = parse_race_document(doc_path, members)
    df = results_to_dataframe(document)

    if df.empty:
        print("No results found!")
    else:
        print("\n=== Document Summary ===")
        for k, v in summarize_document(document).items():
            print(f"  {k}: {v}")

        print("\n=== Sample Results ===")
        print(df[['position', 'last_name', 'first_name', 'team', 'race_time', 'pace',
                  'speed_kmh', 'is_member']].head(15).to_string(index=False))

        members_df = get_member_results(df)
        if len(members_df):
            print("\n=== Members ===")
            for result_id, encoded in encode_document(document):
                if ';ISMEMBER;1;' in encoded:
                    print(f"  {result_id}: {encoded}")
