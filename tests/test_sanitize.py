"""Unit tests for auth/sanitize.py.

Covers:
- Script blocks and tags removed, denylisted characters dropped
- Entity-encoded markup cannot bypass the tag stripper
- Residual < > & are HTML-escaped
- Idempotency: sanitize(sanitize(x)) == sanitize(x)
- Email normalization (trim + lower-case)
"""

import pytest

from auth.sanitize import sanitize, sanitize_email


def test_script_block_removed_with_its_content():
    assert sanitize("<script>alert('x')</script>Ana") == "Ana"


def test_script_block_case_insensitive_and_multiline():
    assert sanitize("<SCRIPT type='text/javascript'>\nsteal()\n</Script >Bob") == "Bob"


def test_tags_stripped_text_kept():
    assert sanitize("<b>bold</b> <i>move</i>") == "bold move"


def test_quotes_semicolons_backslashes_dropped():
    assert sanitize("O'Brien \"Jr\"; \\x") == "OBrien Jr x"


def test_entity_encoded_markup_is_decoded_then_stripped():
    assert sanitize("&lt;b&gt;bold&lt;/b&gt;") == "bold"


def test_residual_angle_bracket_and_ampersand_escaped():
    assert sanitize("a < b & c") == "a &lt; b &amp; c"


def test_surrounding_whitespace_trimmed():
    assert sanitize("   Ana Maria  ") == "Ana Maria"


def test_plain_text_unchanged():
    assert sanitize("Ana Maria") == "Ana Maria"


@pytest.mark.parametrize(
    "raw",
    [
        "Ana",
        "a < b & c",
        "Tom &amp; Jerry",
        "&amp;lt;script&amp;gt;",
        "<script>x</script>O'Brien",
        "&lt;img src=x onerror=alert(1)&gt;",
        "  \"quoted\"; ",
        "1 > 0",
    ],
)
def test_idempotent(raw):
    once = sanitize(raw)
    assert sanitize(once) == once


def test_sanitize_email_lowercases_and_trims():
    assert sanitize_email("  Ana@Example.COM ") == "ana@example.com"


def test_sanitize_email_idempotent():
    once = sanitize_email("Ana@Example.com")
    assert sanitize_email(once) == once
