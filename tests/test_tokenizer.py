"""Tests for LineTokenizer."""

from grindlens import LineTokenizer


class TestStripping:
    """Prefix, character and name stripping."""

    def test_line_terminator_is_dropped(self):
        tok = LineTokenizer("fn=main\r\n")
        assert tok.rest() == "fn=main"
        assert len(tok) == 7

    def test_strip_first_only_on_match(self):
        tok = LineTokenizer("*12")
        assert tok.strip_first("+") is False
        assert tok.strip_first("*") is True
        assert tok.rest() == "12"

    def test_strip_prefix_consumes_whole_literal(self):
        tok = LineTokenizer("calls=3 10")
        assert tok.strip_prefix("cob=") is False
        assert tok.strip_prefix("calls=") is True
        assert tok.rest() == "3 10"

    def test_strip_prefix_longer_than_line(self):
        tok = LineTokenizer("fn")
        assert tok.strip_prefix("fn=") is False
        assert tok.rest() == "fn"

    def test_peek_first_on_empty(self):
        tok = LineTokenizer("\n")
        assert tok.peek_first() is None
        assert tok.is_empty()

    def test_strip_name(self):
        tok = LineTokenizer("I1mr = Ir")
        assert tok.strip_name() == "I1mr"
        assert tok.rest() == " = Ir"

    def test_strip_name_rejects_digit_start(self):
        tok = LineTokenizer("1abc")
        assert tok.strip_name() is None
        assert tok.rest() == "1abc"

    def test_strip_until(self):
        tok = LineTokenizer("Ir + 2 Dr: Estimate")
        assert tok.strip_until(":") == "Ir + 2 Dr"
        assert tok.rest() == " Estimate"

    def test_strip_until_missing_delimiter_takes_all(self):
        tok = LineTokenizer("abc")
        assert tok.strip_until(":") == "abc"
        assert tok.is_empty()

    def test_strip_surrounding_spaces(self):
        tok = LineTokenizer("   Trigger: end  \n")
        tok.strip_surrounding_spaces()
        assert tok.rest() == "Trigger: end"

    def test_view_over_range(self):
        tok = LineTokenizer("xxfn=abcyy", start=2, end=8)
        assert str(tok) == "fn=abc"


class TestNumbers:
    """Numeric strippers never raise on malformed text."""

    def test_decimal_with_spaces(self):
        tok = LineTokenizer("42   7")
        assert tok.strip_uint() == 42
        assert tok.rest() == "7"

    def test_keep_spaces(self):
        tok = LineTokenizer("42 7")
        assert tok.strip_uint(strip_spaces=False) == 42
        assert tok.rest() == " 7"

    def test_hex(self):
        tok = LineTokenizer("0x4005d0 3")
        assert tok.strip_uint64() == 0x4005D0
        assert tok.rest() == "3"

    def test_bare_0x_is_zero_then_x(self):
        tok = LineTokenizer("0x")
        assert tok.strip_uint64() == 0
        assert tok.rest() == "x"

    def test_malformed_returns_none_without_consuming(self):
        tok = LineTokenizer("abc")
        assert tok.strip_uint() is None
        assert tok.rest() == "abc"

    def test_uint_range(self):
        tok = LineTokenizer("4294967296")
        assert tok.strip_uint() is None
        assert tok.strip_uint64() == 4294967296

    def test_uint64_range(self):
        tok = LineTokenizer("18446744073709551616")
        assert tok.strip_uint64() is None
        assert tok.strip_counter() == 18446744073709551616
