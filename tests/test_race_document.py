"""Tests for race_document filename metadata, reference time and columns."""

from datetime import date, timedelta

from race_document import (
    classify_race_type,
    column_value,
    detect_columns,
    extract_reference_time,
    parse_filename_metadata,
)
from race_models import RaceType


# ---------------------------------------------------------------------------
# Filename metadata
# ---------------------------------------------------------------------------


class TestFilenameMetadata:
    def test_underscore_convention(self):
        meta = parse_filename_metadata("2024-05-12_Jogging des Fraises_Huy_CJPL_10,5.pdf")
        assert meta.race_date == date(2024, 5, 12)
        assert meta.race_name == "Jogging des Fraises"
        assert meta.location == "Huy"
        assert meta.category == "CJPL"
        assert meta.distance_km == 10.5

    def test_underscore_without_distance(self):
        meta = parse_filename_metadata("2024-05-12_Cross de Huy_Huy.xlsx")
        assert meta.race_name == "Cross de Huy"
        assert meta.location == "Huy"
        assert meta.category is None
        assert meta.distance_km is None

    def test_invalid_date_left_unset(self):
        meta = parse_filename_metadata("2024-13-45_Foo_Bar.pdf")
        assert meta.race_date is None
        assert meta.race_name == "Foo"

    def test_legacy_grand_challenge(self):
        meta = parse_filename_metadata("20240512Grand Prix de SeraingGC.pdf")
        assert meta.race_date == date(2024, 5, 12)
        assert meta.race_name == "Grand Prix de Seraing"
        assert meta.category == "GC"

    def test_legacy_classement(self):
        meta = parse_filename_metadata("Classement-10km-Jogging de Nandrin.pdf")
        assert meta.distance_km == 10.0
        assert meta.race_name == "Jogging de Nandrin"

    def test_classement_comma_distance(self):
        meta = parse_filename_metadata("Classement-10,5km-Cross-de-Huy.pdf")
        assert meta.distance_km == 10.5
        assert meta.race_name == "Cross-de-Huy"

    def test_unrecognized_name_not_guessed(self):
        meta = parse_filename_metadata("results.pdf")
        assert meta.file_stem == "results"
        assert meta.race_name is None
        assert meta.race_date is None
        assert meta.distance_km is None


# ---------------------------------------------------------------------------
# Reference time
# ---------------------------------------------------------------------------


class TestReferenceTime:
    def test_first_marker_wins(self):
        lines = ["Résultats", "TREF 00:42:10", "TREF 00:50:00"]
        assert extract_reference_time(lines) == timedelta(minutes=42, seconds=10)

    def test_french_marker_pace(self):
        reference = extract_reference_time(["Temps de référence : 4:12"])
        assert reference == timedelta(minutes=4, seconds=12)
        assert classify_race_type(reference) == RaceType.TIME_PER_KM

    def test_no_marker_is_race_time(self):
        assert extract_reference_time(["1 DUPONT Jean 00:42:10"]) is None
        assert classify_race_type(None) == RaceType.RACE_TIME

    def test_long_reference_is_race_time(self):
        assert classify_race_type(timedelta(minutes=35)) == RaceType.RACE_TIME


# ---------------------------------------------------------------------------
# Columns
# ---------------------------------------------------------------------------


class TestColumns:
    def test_detect_simple_header(self):
        assert detect_columns("Pl.  Nom            Temps") == {"position": 0, "name": 5, "time": 20}

    def test_longer_keyword_claims_first(self):
        """'Pl./S.' is the sex position column, not a second 'Pl.'."""
        columns = detect_columns("Pl.  Pl./S.  Nom")
        assert columns == {"position": 0, "position_sex": 5, "name": 13}

    def test_nom_inside_prenom_is_not_name(self):
        columns = detect_columns("Pl.  Nom  Prénom")
        assert columns == {"position": 0, "name": 5, "first_name": 10}

    def test_missing_columns_are_omitted(self):
        columns = detect_columns("Pl.  Nom")
        assert "team" not in columns
        assert "time" not in columns

    def test_column_value_slices_to_next_column(self):
        columns = {"position": 0, "name": 5, "time": 20}
        line = "1.   DUPONT Jean    00:42:10"
        assert column_value(line, columns, "position") == "1."
        assert column_value(line, columns, "name") == "DUPONT Jean"
        assert column_value(line, columns, "time") == "00:42:10"
        assert column_value(line, columns, "team") is None
