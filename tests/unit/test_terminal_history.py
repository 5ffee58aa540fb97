"""Unit tests for shimmerdesk.core.terminal.history — recall, navigation, export."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from shimmerdesk.core.terminal.history import CommandHistory, TerminalCommand

# ---------------------------------------------------------------------------
# TerminalCommand
# ---------------------------------------------------------------------------


class TestTerminalCommand:
    def test_finish_once(self) -> None:
        cmd = TerminalCommand(command="ls")
        assert cmd.is_running
        assert cmd.finish(0) is True
        assert cmd.finish(1) is False
        assert cmd.exit_code == 0
        assert not cmd.is_running

    def test_output_frozen_after_finish(self) -> None:
        cmd = TerminalCommand(command="ls")
        cmd.append_output("a")
        cmd.finish(None)
        cmd.append_output("b")
        assert cmd.output == "a"

    def test_output_keeps_newest_lines(self) -> None:
        cmd = TerminalCommand(command="yes", max_output_lines=3)
        for i in range(10):
            cmd.append_output(f"y{i}\n")
        assert cmd.output == "y7\ny8\ny9\n"
        assert cmd.truncated
        assert cmd.to_dict()["truncated"] is True

    def test_partial_line_kept_after_trim(self) -> None:
        cmd = TerminalCommand(command="x", max_output_lines=1)
        cmd.append_output("a\nb\nc")
        assert cmd.output == "b\nc"
        cmd.append_output("d\ne")
        assert cmd.output == "cd\ne"

    def test_output_without_newlines_capped_by_chars(self) -> None:
        cmd = TerminalCommand(command="cat", max_output_chars=10)
        cmd.append_output("x" * 25)
        cmd.append_output("end")
        assert cmd.output == "xxxxxxxend"
        assert cmd.truncated

    def test_small_output_not_truncated(self) -> None:
        cmd = TerminalCommand(command="ls")
        cmd.append_output("a\nb\n")
        assert not cmd.truncated

    def test_history_passes_limits(self) -> None:
        h = CommandHistory(output_lines=5, output_chars=50)
        cmd = h.start_command("ls")
        assert (cmd.max_output_lines, cmd.max_output_chars) == (5, 50)


# ---------------------------------------------------------------------------
# Recall list
# ---------------------------------------------------------------------------


class TestRecall:
    def test_skips_blank_and_consecutive_duplicates(self) -> None:
        h = CommandHistory()
        for line in ["ls", "ls", "  ", "pwd", "ls", " ls "]:
            h.add_line(line)
        assert h.lines == ["ls", "pwd", "ls"]

    def test_bounded_by_limit(self) -> None:
        h = CommandHistory(limit=3)
        for i in range(5):
            h.add_line(f"cmd{i}")
        assert h.lines == ["cmd2", "cmd3", "cmd4"]

    def test_start_command_records_both_views(self) -> None:
        h = CommandHistory()
        cmd = h.start_command("echo hi")
        assert h.commands == [cmd]
        assert h.running is cmd
        assert h.lines == ["echo hi"]

    def test_clear_keeps_command_records(self) -> None:
        h = CommandHistory()
        h.start_command("a")
        h.clear()
        assert h.lines == []
        assert len(h.commands) == 1


class TestNavigate:
    @pytest.fixture
    def h(self) -> CommandHistory:
        h = CommandHistory()
        for line in ["one", "two", "three"]:
            h.add_line(line)
        return h

    def test_empty_history(self) -> None:
        assert CommandHistory().navigate("up") == ""

    def test_up_walks_back_and_stops_at_oldest(self, h: CommandHistory) -> None:
        assert [h.navigate("up") for _ in range(4)] == ["three", "two", "one", "one"]

    def test_down_returns_towards_newest_then_blank(self, h: CommandHistory) -> None:
        h.navigate("up")
        h.navigate("up")
        h.navigate("up")
        assert h.navigate("down") == "two"
        assert h.navigate("down") == "three"
        assert h.navigate("down") == ""
        assert h.navigate("down") == ""

    def test_new_line_resets_cursor(self, h: CommandHistory) -> None:
        h.navigate("up")
        h.navigate("up")
        h.add_line("four")
        assert h.navigate("up") == "four"

    def test_bad_direction(self, h: CommandHistory) -> None:
        with pytest.raises(ValueError):
            h.navigate("left")  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    def test_format(self) -> None:
        h = CommandHistory()
        ok = h.start_command("echo hi")
        ok.append_output("hi")
        ok.finish(0)
        ok.duration_ms = 12
        bad = h.start_command("false")
        bad.finish(1)
        bad.duration_ms = 0

        text = h.export(
            name="Terminal 1",
            created_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
            working_directory="/home/me",
        )
        lines = text.split("\n")
        assert lines[0] == "# Terminal Session: Terminal 1"
        assert lines[1] == "# Created: 2026-01-02T03:04:05+00:00"
        assert lines[2] == "# Working Directory: /home/me"
        assert lines[3] == ""
        assert lines[4].startswith("# [") and lines[4].endswith("] $ echo hi (12ms)")
        assert lines[5] == "hi"
        assert lines[6].endswith("] $ false")
        assert lines[7] == "# Exit code: 1"

    def test_unknown_exit_code_not_reported(self) -> None:
        h = CommandHistory()
        h.start_command("sleep 1").finish(None)
        text = h.export(name="t", created_at=datetime.now(UTC), working_directory="/")
        assert "Exit code" not in text
