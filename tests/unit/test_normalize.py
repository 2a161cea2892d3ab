"""Unit tests for boardgame_etl.normalize."""

from datetime import date

import pytest

from boardgame_etl.normalize import (
    foreign_id,
    format_duration,
    format_play_date,
    normalize_title,
    parse_play_date,
    parse_score,
    title_tokens,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# normalize_title / title_tokens
# ---------------------------------------------------------------------------

class TestNormalizeTitle:
    def test_lowercases_and_trims(self):
        assert normalize_title("  Wingspan ") == "wingspan"

    def test_none_is_empty(self):
        assert normalize_title(None) == ""

    def test_inner_whitespace_kept(self):
        assert normalize_title("Ticket  to Ride") == "ticket  to ride"


class TestTitleTokens:
    def test_splits_on_punctuation(self):
        assert title_tokens("Cities & Knights: Expansion") == ["cities", "knights", "expansion"]

    def test_drops_short_tokens(self):
        assert title_tokens("Tales of the Arabian Nights") == ["tales", "the", "arabian", "nights"]

    def test_custom_min_length(self):
        assert title_tokens("Age of Steam", min_length=4) == ["steam"]

    def test_digits_are_tokens(self):
        assert title_tokens("7 Wonders 2nd Edition") == ["wonders", "2nd", "edition"]

    def test_none(self):
        assert title_tokens(None) == []


# ---------------------------------------------------------------------------
# Dates and durations
# ---------------------------------------------------------------------------

class TestParsePlayDate:
    @pytest.mark.parametrize("raw", [
        "2024-03-01 19:30:00",
        "2024-03-01T19:30:00",
        "2024-03-01 19:30",
        "2024-03-01",
    ])
    def test_known_formats(self, raw):
        assert parse_play_date(raw) == date(2024, 3, 1)

    def test_garbage_returns_none(self):
        assert parse_play_date("yesterday") is None

    def test_non_string_returns_none(self):
        assert parse_play_date(20240301) is None

    def test_blank_returns_none(self):
        assert parse_play_date("  ") is None


class TestFormatPlayDate:
    def test_default_iso(self):
        assert format_play_date("2024-03-01 19:30:00") == "2024-03-01"

    def test_custom_format(self):
        assert format_play_date("2024-03-01 19:30:00", "%d-%m-%Y") == "01-03-2024"

    def test_unparseable_kept_raw(self):
        assert format_play_date("sometime in May") == "sometime in May"

    def test_none_is_empty(self):
        assert format_play_date(None) == ""


class TestFormatDuration:
    def test_under_an_hour(self):
        assert format_duration(45) == "0:45:00"

    def test_over_an_hour(self):
        assert format_duration(125) == "2:05:00"

    def test_numeric_string(self):
        assert format_duration("90") == "1:30:00"

    @pytest.mark.parametrize("raw", [None, 0, "", "abc", -5, True])
    def test_missing_or_invalid(self, raw):
        assert format_duration(raw) is None


# ---------------------------------------------------------------------------
# parse_score
# ---------------------------------------------------------------------------

class TestParseScore:
    def test_int(self):
        assert parse_score(42) == 42

    def test_integral_float_becomes_int(self):
        result = parse_score(42.0)
        assert result == 42
        assert isinstance(result, int)

    def test_numeric_string(self):
        assert parse_score(" 17 ") == 17

    def test_fractional(self):
        assert parse_score("12.5") == 12.5

    def test_negative(self):
        assert parse_score(-3) == -3

    @pytest.mark.parametrize("raw", [None, "", "n/a", True, False, "nan", float("inf")])
    def test_unreadable_is_zero(self, raw):
        assert parse_score(raw) == 0


class TestForeignId:
    def test_prefixes(self):
        assert foreign_id("bg_", 7) == "bg_7"
        assert foreign_id("bg_ext_", "12") == "bg_ext_12"
