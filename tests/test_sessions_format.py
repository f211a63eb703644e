from types import SimpleNamespace

from code_remote.sessions_format import (
    NO_PROMPT_PLACEHOLDER,
    ListFormatOptions,
    format_conversation,
    format_relative_time,
    format_sessions_list,
)

NOW = 1_700_000_000.0


def _entry(**kwargs):
    base = dict(
        token="ABCD1234",
        session_id="sess-1",
        repo_name="demo",
        last_access=NOW - 120,
        initial_message="fix the build",
        last_message="now add tests",
    )
    base.update(kwargs)
    return SimpleNamespace(**base)


def test_relative_time_units() -> None:
    assert format_relative_time(None, now=NOW) == "unknown"
    assert format_relative_time(NOW + 5, now=NOW) == "0 seconds ago"
    assert format_relative_time(NOW - 1, now=NOW) == "1 second ago"
    assert format_relative_time(NOW - 59, now=NOW) == "59 seconds ago"
    assert format_relative_time(NOW - 60, now=NOW) == "1 minute ago"
    assert format_relative_time(NOW - 7200, now=NOW) == "2 hours ago"
    assert format_relative_time(NOW - 3 * 86400, now=NOW) == "3 days ago"


def test_format_conversation() -> None:
    assert format_conversation("a", "b") == "a | b"
    assert format_conversation("same", " same ") == "same"
    assert format_conversation("", None) == NO_PROMPT_PLACEHOLDER
    assert format_conversation("multi\n  line", "") == "multi line"
    assert format_conversation("x" * 20, "", 10) == "xxxxxxx..."
    assert format_conversation("x" * 200, "", float("inf")) == "x" * 200


def test_default_list_layout() -> None:
    output = format_sessions_list([_entry()], now=NOW)
    assert output.splitlines() == [
        "Updated  Token Conversation",
        "2 minutes ago ABCD1234 fix the build | now add tests",
    ]


def test_padded_debug_layout() -> None:
    options = ListFormatOptions(
        pad_token=True, session_id_column=True, repo_column=True, include_header=False
    )
    [line] = format_sessions_list([_entry()], options, now=NOW).splitlines()
    assert line.startswith("2 minutes ago   ABCD1234  sess-1")
    assert "demo           fix the build" in line


def test_tokenless_layout() -> None:
    options = ListFormatOptions(token_column=False)
    output = format_sessions_list([_entry(initial_message="", last_message="")], options, now=NOW)
    assert output.splitlines() == [
        "Updated Conversation",
        f"2 minutes ago {NO_PROMPT_PLACEHOLDER}",
    ]
