from __future__ import annotations

import pytest

from cli_sessions import ESC, trim_to_safe_start


def test_short_buffer_is_untouched() -> None:
    assert trim_to_safe_start("hello", 10) == "hello"
    assert trim_to_safe_start("x" * 10, 10) == "x" * 10


def test_prefers_escape_sequence_start() -> None:
    buf = "a" * 50 + "\n" + "b" * 10 + ESC + "[31mred" + "c" * 20
    trimmed = trim_to_safe_start(buf, 40)
    assert trimmed.startswith(ESC + "[31m")
    assert buf.endswith(trimmed)


def test_falls_back_to_line_start() -> None:
    buf = "a" * 30 + "\n" + "b" * 30
    trimmed = trim_to_safe_start(buf, 40)
    assert trimmed == "b" * 30


def test_falls_back_to_carriage_return() -> None:
    buf = "a" * 30 + "\r" + "b" * 30
    trimmed = trim_to_safe_start(buf, 40)
    assert trimmed == "b" * 30


def test_hard_cut_without_boundaries() -> None:
    buf = "x" * 100
    assert trim_to_safe_start(buf, 40) == "x" * 40


@pytest.mark.parametrize("shift", range(0, 11))
@pytest.mark.parametrize("boundary", [ESC + "[0m", "\n", "\r"])
def test_never_starts_mid_escape_sequence(shift: int, boundary: str) -> None:
    limit = 64
    sequence = ESC + "[38;5;208m"
    tail = "red text" + boundary + "w" * 40
    padding = limit + shift - len(sequence) - len(tail)
    buf = "q" * 200 + sequence + "v" * padding + tail
    # The naive cutoff lands `shift` characters into the colour sequence.
    assert len(buf) - limit == 200 + shift

    trimmed = trim_to_safe_start(buf, limit)
    start = len(buf) - len(trimmed)
    assert buf[start:] == trimmed
    if shift == 0:
        assert trimmed.startswith(sequence)
    else:
        assert start >= 200 + len(sequence)
        assert trimmed.startswith(ESC) or buf[start - 1] in "\n\r"
