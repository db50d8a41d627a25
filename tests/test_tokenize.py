from __future__ import annotations

import pytest

from buildorch.args.tokenize import join_arguments, quote_argument, sanitize_arguments, tokenize
from buildorch.util.errors import UnterminatedQuoteError


@pytest.mark.parametrize(
    ("arguments", "expected"),
    [
        ("a\\ b c", ["a b", "c"]),
        ("'a b' c", ["a b", "c"]),
        ('"a\\" b" c', ['a" b', "c"]),
        ("'a\\' b' c", ["a' b", "c"]),
    ],
)
def test_tokenize_reference_vectors(arguments: str, expected: list[str]) -> None:
    assert tokenize(arguments) == expected


def test_tokenize_collapses_repeated_spaces() -> None:
    assert tokenize("  -v   --out  build  ") == ["-v", "--out", "build"]


def test_tokenize_empty_input_yields_no_tokens() -> None:
    assert tokenize("") == []
    assert tokenize("   ") == []


def test_tokenize_quotes_join_adjacent_text() -> None:
    assert tokenize("--name='hello world'") == ["--name=hello world"]
    assert tokenize('pre"mid dle"post') == ["premid dlepost"]


def test_tokenize_other_quote_is_literal_inside_quotes() -> None:
    assert tokenize("\"it's\" 'say \"hi\"'") == ["it's", 'say "hi"']


def test_tokenize_keeps_backslash_before_ordinary_char_outside_quotes() -> None:
    assert tokenize("C:\\tmp\\out") == ["C:\\tmp\\out"]


def test_tokenize_single_quote_keeps_backslash_before_ordinary_char() -> None:
    assert tokenize("'a\\b'") == ["a\\b"]
    assert tokenize("'a\\\\b'") == ["a\\b"]


def test_tokenize_double_quote_escapes_any_char() -> None:
    assert tokenize('"a\\b"') == ["ab"]


def test_tokenize_trailing_backslash_is_literal() -> None:
    assert tokenize("abc\\") == ["abc\\"]
    assert tokenize("abc \\") == ["abc", "\\"]


def test_tokenize_empty_quotes_produce_no_token() -> None:
    assert tokenize("a '' \"\" b") == ["a", "b"]


@pytest.mark.parametrize(("arguments", "quote"), [("'abc", "'"), ('x "abc', '"')])
def test_tokenize_unterminated_quote_fails(arguments: str, quote: str) -> None:
    with pytest.raises(UnterminatedQuoteError) as exc_info:
        tokenize(arguments)
    assert exc_info.value.quote == quote
    assert exc_info.value.arguments == arguments
    assert isinstance(exc_info.value, ValueError)


def test_sanitize_arguments_flattens_whitespace() -> None:
    assert tokenize(sanitize_arguments("-a\n-b\t-c")) == ["-a", "-b", "-c"]


def test_quote_argument_escapes_separators_and_quotes() -> None:
    assert quote_argument("a b") == "a\\ b"
    assert quote_argument("it's") == "it\\'s"
    assert quote_argument("plain") == "plain"


def test_join_arguments_round_trips_through_tokenize() -> None:
    tokens = ["plain", "with space", "quote's", 'dq"x', "back\\slash", "C:\\dir\\file", "  "]
    assert tokenize(join_arguments(tokens)) == tokens
