import re

import pytest

from code_remote.tokens import (
    TokenGenerationError,
    generate_token,
    generate_unique_token,
    is_valid_token,
    normalize_token,
)


def test_generated_tokens_match_the_alphabet() -> None:
    for _ in range(50):
        assert re.fullmatch(r"[A-Z0-9]{8}", generate_token())


def test_normalize_token() -> None:
    assert normalize_token(" abcd1234 ") == "ABCD1234"
    assert normalize_token("ABCD123") is None
    assert normalize_token("ABCD-234") is None
    assert normalize_token(None) is None
    assert is_valid_token("zzzz9999")
    assert not is_valid_token("too-long-token")


def test_unique_token_rechecks_live_set_each_attempt() -> None:
    live = {"AAAA1111"}
    reads = []

    def live_tokens():
        reads.append(1)
        return live

    draws = iter(["AAAA1111", "bad", "BBBB2222"])
    token = generate_unique_token(live_tokens, generator=lambda: next(draws))

    assert token == "BBBB2222"
    assert len(reads) == 2


def test_unique_token_attempts_are_bounded() -> None:
    with pytest.raises(TokenGenerationError):
        generate_unique_token(
            lambda: {"AAAA1111"}, generator=lambda: "AAAA1111", max_attempts=5
        )
