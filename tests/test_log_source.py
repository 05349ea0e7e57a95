import os

import pytest

from logwarden.modules.errors import FloodDetected, LogNotFound, LogUnreadable
from logwarden.modules.log_source import LogSource


def append(path, text):
    with open(path, "a") as handle:
        handle.write(text)


def test_open_at_end_skips_existing_lines(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("old line\n")

    source = LogSource(str(path))
    source.open()
    append(path, "new line\n")

    assert source.read_new() == ["new line"]
    assert source.read_new() == []


def test_open_from_start_reads_everything(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("first\nsecond\n")

    source = LogSource(str(path))
    source.open(from_start=True)

    assert source.read_new() == ["first", "second"]


def test_partial_line_is_held_back(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path))
    source.open()

    append(path, "partial")
    assert source.read_new() == []

    append(path, " done\nnext")
    assert source.read_new() == ["partial done"]


def test_rotation_reopens_new_file_from_start(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("before\n")
    source = LogSource(str(path))
    source.open()

    os.rename(path, tmp_path / "auth.log.1")
    path.write_text("fresh one\nfresh two\n")

    assert source.read_new() == ["fresh one", "fresh two"]


def test_truncation_restarts_at_zero(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path))
    source.open()
    append(path, "a fairly long line of text\n")
    assert source.read_new() == ["a fairly long line of text"]

    path.write_text("short\n")

    assert source.read_new() == ["short"]


def test_missing_path_raises_and_closes(tmp_path):
    path = tmp_path / "auth.log"
    source = LogSource(str(path))

    with pytest.raises(LogNotFound):
        source.open()

    path.write_text("")
    source.open()
    path.unlink()

    with pytest.raises(LogNotFound):
        source.read_new()
    assert not source.is_open


def test_reappearing_file_is_read_from_start(tmp_path):
    path = tmp_path / "auth.log"
    source = LogSource(str(path))

    path.write_text("created later\n")

    assert source.read_new() == ["created later"]


def test_flood_detection_and_recovery(tmp_path, clock):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path), flood_threshold=3, flood_interval=60, clock=clock)
    source.open()

    append(path, "".join(f"line {n}\n" for n in range(5)))
    with pytest.raises(FloodDetected) as excinfo:
        source.read_new()
    assert excinfo.value.line_count == 5

    append(path, "skipped by recovery\n")
    source.recover_from_flood()
    append(path, "after recovery\n")

    assert source.read_new() == ["after recovery"]


def test_flood_window_resets(tmp_path, clock):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path), flood_threshold=3, flood_interval=60, clock=clock)
    source.open()

    append(path, "a\nb\nc\n")
    assert len(source.read_new()) == 3

    clock.advance(61)
    append(path, "d\ne\n")
    assert source.read_new() == ["d", "e"]


def test_flood_threshold_zero_disables(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path), flood_threshold=0)
    source.open()

    append(path, "x\n" * 100)
    assert len(source.read_new()) == 100


def test_only_newline_ends_a_record(tmp_path):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path), flood_threshold=2)
    source.open()

    with open(path, "ab") as handle:
        handle.write("one\x0bstill one\x1cand more\r\ntwo\n".encode("utf-8"))

    assert source.read_new() == ["one\x0bstill one\x1cand more", "two"]


def test_truncation_resets_flood_count(tmp_path, clock):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path), flood_threshold=3, flood_interval=60, clock=clock)
    source.open()

    append(path, "a\nb\nc\n")
    assert len(source.read_new()) == 3

    path.write_text("d\n")
    assert source.read_new() == ["d"]


def test_unreadable_at_open_starts_at_end_once_readable(tmp_path, deny_open):
    path = tmp_path / "auth.log"
    path.write_text("history\n")
    deny_open.add(str(path))
    source = LogSource(str(path))

    with pytest.raises(LogUnreadable) as excinfo:
        source.open()
    assert isinstance(excinfo.value.reason, PermissionError)
    assert not source.is_open

    append(path, "fresh\n")
    with pytest.raises(LogUnreadable):
        source.read_new()

    deny_open.clear()
    assert source.read_new() == ["fresh"]


def test_unreadable_rotated_file_is_read_from_start_later(tmp_path, deny_open):
    path = tmp_path / "auth.log"
    path.write_text("before\n")
    source = LogSource(str(path))
    source.open()

    os.rename(path, tmp_path / "auth.log.1")
    path.write_text("fresh one\n")
    deny_open.add(str(path))

    with pytest.raises(LogUnreadable):
        source.read_new()

    deny_open.clear()
    assert source.read_new() == ["fresh one"]


def test_reopen_after_read_failure_resumes_at_offset(tmp_path, deny_open):
    path = tmp_path / "auth.log"
    path.write_text("")
    source = LogSource(str(path))
    source.open()
    append(path, "one\n")
    assert source.read_new() == ["one"]

    source.close()
    deny_open.add(str(path))
    append(path, "two\n")
    with pytest.raises(LogUnreadable):
        source.read_new()

    deny_open.clear()
    assert source.read_new() == ["two"]
