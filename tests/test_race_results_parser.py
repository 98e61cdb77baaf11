"""Tests for the race_results_parser pipeline."""

from datetime import timedelta

import pandas as pd
import pytest

import race_results_parser
from race_fields import parse_leading_position
from race_formats import StandardParser
from race_models import (
    DocumentMetadata,
    DocumentUnreadable,
    ParsedParticipantResult,
    ParseStats,
    RaceType,
    RosterEntry,
)
from race_results_parser import (
    backfill_winner_from_lines,
    decode_result,
    deduplicate_results,
    encode_document,
    encode_result,
    get_member_results,
    is_disqualified_line,
    is_representative,
    locate_cell_columns,
    looks_like_header,
    parse_documents,
    parse_lines,
    parse_race_document,
    parse_spreadsheet_rows,
    parse_text,
    results_to_dataframe,
    summarize_document,
)


@pytest.fixture
def roster():
    return [RosterEntry("Jean", "DUPONT", "jean@example.org", True)]


RESULTS_TEXT = "\n".join([
    "Jogging de Huy - Résultats",
    "Pl. Nom Temps",
    "1 MARTIN Paul 00:29:10",
    "2 DUPONT Jean 00:35:12 16.95",
    "3 LEROY Marc DSQ",
    "",
    "4 BERNARD Luc 00:41:00",
])


# ---------------------------------------------------------------------------
# Text documents
# ---------------------------------------------------------------------------


class TestParseText:
    def test_results_and_counters(self, roster):
        doc = parse_text(RESULTS_TEXT, roster)
        assert doc.format_name == "Standard"
        assert [r.position for r in doc.results] == [1, 2, 4]
        assert doc.stats.successes == 3
        assert doc.stats.blank_lines == 1
        assert doc.stats.header_skips == 2

    def test_disqualified_row_counted_separately(self, roster):
        """A DSQ line is never output and never counted as a failure."""
        doc = parse_text(RESULTS_TEXT, roster)
        assert doc.stats.disqualified_skips == 1
        assert doc.stats.failures == 0
        assert all(r.last_name != "LEROY" for r in doc.results)

    def test_winner_non_member(self, roster):
        doc = parse_text(RESULTS_TEXT, roster)
        winners = [r for r in doc.results if r.position == 1]
        assert len(winners) == 1
        assert not winners[0].is_member
        assert (winners[0].first_name, winners[0].last_name) == ("Paul", "MARTIN")

    def test_member_flagged(self, roster):
        doc = parse_text(RESULTS_TEXT, roster)
        dupont = doc.results[1]
        assert dupont.is_member
        assert dupont.speed_kmh == pytest.approx(16.95)

    def test_reference_time_sets_race_type(self):
        doc = parse_text("TREF 04:00\n1 MARTIN Paul 00:40:00 04:00\n2 DUPONT Jean 00:48:00 04:48", [])
        assert doc.reference_time == timedelta(minutes=4)
        assert doc.race_type == RaceType.TIME_PER_KM

    def test_orphaned_time_joins_next_line(self):
        doc = parse_text("00:29:10\n1 MARTIN Paul", [])
        assert doc.results[0].race_time == timedelta(minutes=29, seconds=10)

    def test_row_with_unreadable_time_is_kept(self):
        """Position and name are enough; the bad time is left unset."""
        doc = parse_text("1 MARTIN Paul 00:29:10\n2 DUPONT Jean 0:7x:99", [])
        assert [r.position for r in doc.results] == [1, 2]
        assert doc.stats.filtered_out == 0

        dupont = doc.results[1]
        assert (dupont.first_name, dupont.last_name) == ("Jean", "DUPONT")
        assert dupont.race_time is None
        assert dupont.pace is None

    def test_row_without_time_is_kept(self):
        doc = parse_text("1 MARTIN Paul 00:29:10\n2 DUPONT Jean", [])
        assert [r.position for r in doc.results] == [1, 2]

    def test_duplicate_positions_keep_richest(self):
        doc = parse_text("1 MARTIN Paul 00:29:10\n1 MARTIN Paul (RC Liège) 00:29:10 20,57", [])
        assert len(doc.results) == 1
        assert doc.results[0].team == "RC Liège"
        assert doc.stats.duplicates_removed == 1

    def test_metadata_passed_through(self):
        meta = DocumentMetadata(file_stem="x", race_name="Jogging")
        assert parse_text("1 MARTIN Paul 00:29:10", [], meta).metadata.race_name == "Jogging"


class TestLineHelpers:
    def test_looks_like_header(self):
        assert looks_like_header("Classement général")
        assert looks_like_header("Pl. Nom Temps")
        assert not looks_like_header("12 DUPONT Jean")

    def test_is_representative(self):
        assert is_representative(ParsedParticipantResult(1, "A", "B", race_time=timedelta(minutes=30)))
        assert is_representative(ParsedParticipantResult(1, "A", "B", pace=timedelta(minutes=4)))
        assert is_representative(ParsedParticipantResult(1, "A", "B"))
        assert not is_representative(ParsedParticipantResult(1, "A", "B", race_time=timedelta(0)))
        assert not is_representative(ParsedParticipantResult(1, "A", "B", race_time=timedelta(minutes=5)))

    def test_disqualified_row_flagged_then_dropped(self):
        stats = ParseStats()
        results = parse_lines(["3 LEROY Marc DSQ"], StandardParser(), [], stats)
        assert len(results) == 1
        assert results[0].is_disqualified
        assert (results[0].first_name, results[0].last_name) == ("Marc", "LEROY")
        assert stats.disqualified_skips == 1
        assert stats.successes == 0
        assert stats.failures == 0

    def test_disqualified_markers_any_case(self):
        assert is_disqualified_line("12 LEROY Marc dnf")
        assert is_disqualified_line("12 LEROY Marc Abandonné")
        assert not is_disqualified_line("12 LEROY Marc 00:41:00")

    def test_deduplicate_prefers_named_row(self):
        bare = ParsedParticipantResult(2, "Unknown", "Unknown", race_time=timedelta(minutes=30))
        named = ParsedParticipantResult(2, "Jean", "DUPONT")
        assert deduplicate_results([bare, named]) == [named]


class WinnerBlindParser(StandardParser):
    """Standard parser that cannot read the position 1 row."""

    def parse_line(self, line, roster, state):
        if parse_leading_position(line.strip())[0] == 1:
            return None, state
        return super().parse_line(line, roster, state)


class TestWinnerBackfill:
    def test_missing_winner_added_once(self, roster):
        text = "1 MARTIN Paul 00:29:10\n2 DUPONT Jean 00:35:12"
        doc = parse_text(text, roster, parser=WinnerBlindParser())
        assert [r.position for r in doc.results] == [1, 2]
        assert doc.stats.failures == 1

        winners = [r for r in doc.results if r.position == 1]
        assert len(winners) == 1
        assert not winners[0].is_member
        assert (winners[0].first_name, winners[0].last_name) == ("Paul", "MARTIN")
        assert winners[0].race_time == timedelta(minutes=29, seconds=10)

    def test_winner_row_without_time_not_invented(self, roster):
        doc = parse_text("1 MARTIN Paul\n2 DUPONT Jean 00:35:12", roster, parser=WinnerBlindParser())
        assert [r.position for r in doc.results] == [2]

    def test_not_run_when_winner_present(self, monkeypatch, roster):
        calls = []
        monkeypatch.setattr(race_results_parser, "backfill_winner_from_lines",
                            lambda lines: calls.append(lines))
        doc = parse_text(RESULTS_TEXT, roster)
        assert calls == []
        assert sum(1 for r in doc.results if r.position == 1) == 1

    def test_backfill_skips_other_rows(self):
        lines = ["Pl. Nom Temps", "2 DUPONT Jean 00:35:12", "1 MARTIN Paul 00:29:10"]
        winner = backfill_winner_from_lines(lines)
        assert winner.position == 1
        assert winner.last_name == "MARTIN"
        assert not winner.is_member


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------


SHEET_ROWS = [
    ["Place", "Nom", "Prénom", "Club", "Temps", "Vitesse"],
    ["1", "MARTIN", "Paul", "RC Liège", "00:29:10", "20,57"],
    ["2", "DUPONT", "Jean", "AC Huy", "00:35:12", "17,05"],
    ["3", "LEROY", "Marc", "", "00:41:00", "14,63"],
]


class TestSpreadsheet:
    def test_header_columns(self):
        assert locate_cell_columns(SHEET_ROWS[0]) == {
            "position": 0, "name": 1, "first_name": 2, "team": 3, "time": 4, "speed": 5,
        }

    def test_members_and_winner_backfill(self, roster):
        doc = parse_spreadsheet_rows({"Résultats": SHEET_ROWS}, roster)
        assert [r.position for r in doc.results] == [1, 2]

        winner, member = doc.results
        assert not winner.is_member
        assert (winner.first_name, winner.last_name) == ("Paul", "MARTIN")
        assert winner.race_time == timedelta(minutes=29, seconds=10)

        assert member.is_member
        assert member.team == "AC Huy"
        assert member.speed_kmh == pytest.approx(17.05)

    def test_winner_not_duplicated(self):
        roster = [RosterEntry("Paul", "MARTIN")]
        doc = parse_spreadsheet_rows({"Résultats": SHEET_ROWS}, roster)
        assert len(doc.results) == 1
        assert doc.results[0].is_member

    def test_reference_row(self, roster):
        rows = [SHEET_ROWS[0], ["TREF", "", "", "", "00:30:00", ""]] + SHEET_ROWS[1:]
        doc = parse_spreadsheet_rows({"Sheet1": rows}, roster)
        assert doc.reference_time == timedelta(minutes=30)
        assert doc.race_type == RaceType.RACE_TIME

    def test_xlsx_file(self, tmp_path, roster):
        path = tmp_path / "2024-05-12_Jogging_Huy_CJPL_10.xlsx"
        pd.DataFrame(SHEET_ROWS).to_excel(path, header=False, index=False)

        doc = parse_race_document(path, roster)
        assert doc.file_type == "spreadsheet"
        assert doc.metadata.distance_km == 10.0
        assert [r.last_name for r in doc.results] == ["MARTIN", "DUPONT"]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class TestDocuments:
    def test_pdf_text_is_parsed(self, monkeypatch, roster):
        monkeypatch.setattr(race_results_parser, "extract_pdf_text", lambda path: RESULTS_TEXT)
        doc = parse_race_document("2024-05-12_Jogging de Huy_Huy_Open_10.pdf", roster)
        assert doc.file_type == "pdf"
        assert doc.metadata.distance_km == 10.0
        assert len(doc.results) == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentUnreadable):
            parse_race_document(tmp_path / "missing.pdf")

    def test_corrupt_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"this is not a pdf")
        with pytest.raises(DocumentUnreadable):
            parse_race_document(path)

    def test_unsupported_extension(self, tmp_path):
        with pytest.raises(DocumentUnreadable):
            parse_race_document(tmp_path / "results.txt")

    def test_parse_documents_collects_errors(self, monkeypatch, tmp_path, roster):
        monkeypatch.setattr(race_results_parser, "extract_pdf_text", lambda path: RESULTS_TEXT)
        missing = str(tmp_path / "missing.xlsx")
        documents, errors = parse_documents(["a.pdf", missing], roster, max_workers=2)
        assert list(documents) == ["a.pdf"]
        assert list(errors) == [missing]

    def test_dataframe_and_summary(self, roster):
        doc = parse_text(RESULTS_TEXT, roster)
        df = results_to_dataframe(doc)
        assert list(df["position"]) == [1, 2, 4]
        assert list(get_member_results(df)["last_name"]) == ["DUPONT"]
        assert df.loc[1, "race_time"] == "00:35:12"
        assert df.loc[1, "race_seconds"] == 2112
        summary = summarize_document(doc)
        assert summary["total_results"] == 3
        assert summary["members"] == 1


# ---------------------------------------------------------------------------
# Encoded results
# ---------------------------------------------------------------------------


class TestEncoding:
    def test_round_trip(self):
        result = ParsedParticipantResult(
            position=12,
            first_name="Jean",
            last_name="DUPONT",
            full_name_raw="DUPONT Jean",
            race_time=timedelta(minutes=42, seconds=10),
            pace=timedelta(minutes=4, seconds=13),
            team="AC Huy",
            speed_kmh=17.25,
            sex="M",
            position_by_sex=10,
            age_category="V1",
            position_by_category=3,
            is_member=True,
        )
        encoded = encode_result(result, RaceType.RACE_TIME, 7)
        assert encoded.startswith("TMEM;7;DUPONT;Jean;RACETYPE;RACE_TIME;")
        assert decode_result(encoded) == (7, RaceType.RACE_TIME, result)

    def test_minimal_winner(self):
        result = ParsedParticipantResult(1, "Paul", "MARTIN")
        encoded = encode_result(result, RaceType.TIME_PER_KM, 1)
        assert encoded == "TWINNER;1;MARTIN;Paul;RACETYPE;TIME_PER_KM;POS;1;ISMEMBER;0;"
        assert decode_result(encoded)[2] == result

    def test_semicolons_in_team(self):
        result = ParsedParticipantResult(1, "Paul", "MARTIN", team="RC; Liège")
        assert decode_result(encode_result(result, RaceType.RACE_TIME, 1))[2].team == "RC, Liège"

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_result("HELLO;1;")

    def test_encode_document_ids(self, roster):
        doc = parse_text(RESULTS_TEXT, roster)
        encoded = encode_document(doc)
        assert [i for i, _ in encoded] == [1, 2, 3]
        assert encoded[0][1].startswith("TWINNER;1;MARTIN;Paul;")
        assert encoded[1][1].startswith("TMEM;2;DUPONT;Jean;")
