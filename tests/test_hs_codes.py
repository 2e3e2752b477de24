"""
HS Code Normalization Tests

Tests:
- Separator stripping and dotted display form
- Hierarchy level and ancestors
- Strict 6/10 digit normalization
- Detected code parsing
"""

import pytest


class TestNormalize:
    """normalize / format_code"""

    def test_normalize_dotted_10digit(self):
        """8471.30.00.10 → 8471300010"""
        from app.services.hs_codes import normalize
        assert normalize("8471.30.00.10") == "8471300010"

    def test_normalize_spaces_and_dashes(self):
        from app.services.hs_codes import normalize
        assert normalize("8471 30") == "847130"
        assert normalize("84-71") == "8471"

    def test_normalize_empty(self):
        from app.services.hs_codes import normalize
        assert normalize(None) == ""
        assert normalize("") == ""

    def test_normalize_passes_malformed_input_through(self):
        """Non-separator characters are kept, nothing raises."""
        from app.services.hs_codes import normalize
        assert normalize("ab.cd") == "abcd"

    @pytest.mark.parametrize("digits,expected", [
        ("84", "84"),
        ("8471", "84.71"),
        ("847130", "8471.30"),
        ("84713000", "8471.30.00"),
        ("8471300010", "8471.30.00.10"),
    ])
    def test_format_code(self, digits, expected):
        from app.services.hs_codes import format_code
        assert format_code(digits) == expected

    def test_format_then_normalize_returns_digits(self):
        from app.services.hs_codes import format_code, normalize
        for digits in ("84", "8471", "847130", "84713000", "8471300010"):
            assert normalize(format_code(digits)) == digits


class TestHierarchy:
    """level / ancestors / chapter"""

    @pytest.mark.parametrize("code,expected", [
        ("84", "chapter"),
        ("8471", "heading"),
        ("847130", "subheading"),
        ("84713000", "line"),
        ("8471300010", "line"),
    ])
    def test_level(self, code, expected):
        from app.services.hs_codes import level
        assert level(code) == expected

    def test_level_never_decreases_with_length(self):
        from app.services.hs_codes import CHAPTER, HEADING, LINE, SUBHEADING, level

        order = [CHAPTER, HEADING, SUBHEADING, LINE]
        code = "8471300010"
        ranks = [order.index(level(code[:n])) for n in range(1, len(code) + 1)]
        assert ranks == sorted(ranks)

    def test_ancestors_root_first(self):
        from app.services.hs_codes import ancestors
        assert ancestors("8471300010") == ["84", "8471", "847130", "84713000"]
        assert ancestors("8471.30") == ["84", "8471"]

    def test_chapter_has_no_ancestors(self):
        from app.services.hs_codes import ancestors
        assert ancestors("84") == []

    def test_chapter_number(self):
        from app.services.hs_codes import chapter
        assert chapter("8471.30") == 84
        assert chapter("0702") == 7
        assert chapter("ab") == 0


class TestStrictNormalization:

    def test_pads_to_10(self):
        from app.services.hs_codes import normalize_strict_10
        assert normalize_strict_10("8471.30") == "8471300000"

    def test_truncates_to_6(self):
        from app.services.hs_codes import normalize_strict_6
        assert normalize_strict_6("8471300010") == "847130"

    def test_invalid_chapter_is_none(self):
        """Chapter 00 and single digits are rejected."""
        from app.services.hs_codes import normalize_strict_10
        assert normalize_strict_10("0012.34") is None
        assert normalize_strict_10("1") is None
        assert normalize_strict_10(None) is None

    def test_extract_hs6(self):
        from app.services.hs_codes import extract_hs6
        assert extract_hs6("8471.30.00") == "847130"
        assert extract_hs6("8471.3") is None


class TestParseDetectedCode:

    def test_full_code(self):
        from app.services.hs_codes import parse_detected_code
        assert parse_detected_code("8471.30") == {
            "raw": "8471.30",
            "clean": "847130",
            "hs6": "847130",
            "chapter": 84,
        }

    def test_heading_has_no_hs6(self):
        from app.services.hs_codes import parse_detected_code
        assert parse_detected_code("8471")["hs6"] is None

    def test_too_short(self):
        from app.services.hs_codes import parse_detected_code
        assert parse_detected_code("847") is None


def test_escape_search_term():
    """LIKE wildcards are matched literally."""
    from app.services.hs_codes import escape_search_term
    assert escape_search_term("50%_x") == "50\\%\\_x"
