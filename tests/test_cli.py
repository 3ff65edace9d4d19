"""Tests for the command-line entry point."""

import argparse

import pytest

from longform import cli
from longform.services.job_service import JobService


@pytest.fixture()
def stub_cli(monkeypatch, stub_generate, test_settings):
    """Route CLI commands through the stub generator; leave signals and logging alone."""
    monkeypatch.setattr(
        cli, "JobService", lambda: JobService(generate=stub_generate, settings=test_settings),
    )
    monkeypatch.setattr(cli, "_install_cancel", lambda handle: None)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    return stub_generate


class TestParseUnits:
    def test_ranges_and_singles(self):
        assert cli.parse_units("4-9,12") == [4, 5, 6, 7, 8, 9, 12]

    def test_duplicates_and_spaces(self):
        assert cli.parse_units(" 3, 1-3 ,") == [1, 2, 3]

    @pytest.mark.parametrize("bad", ["a", "5-2", "1-x"])
    def test_invalid(self, bad):
        with pytest.raises(argparse.ArgumentTypeError):
            cli.parse_units(bad)


class TestParser:
    def test_resume_options(self):
        args = cli.build_parser().parse_args(["resume", "doc-1", "--units", "6-8", "--batch"])
        assert args.document_id == "doc-1"
        assert args.units == [6, 7, 8]
        assert args.batch is True
        assert args.func is cli.cmd_resume

    def test_unknown_preset_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["resume", "doc-1", "--preset", "most"])

    def test_rewrite_words(self):
        args = cli.build_parser().parse_args(["rewrite", "draft.txt", "--instructions", "Expand", "--words", "12000"])
        assert args.words == 12000
        assert args.func is cli.cmd_rewrite

    def test_custom_requires_instructions(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["custom", "book.txt"])


class TestCommands:
    def test_analyze_quotes(self, stub_cli, tmp_path, capsys):
        source = tmp_path / "book.txt"
        source.write_text(" ".join(f"w{i}" for i in range(3000)), encoding="utf-8")

        code = cli.main(["analyze", "quotes", str(source), "--author", "Kant"])

        out = capsys.readouterr().out
        assert code == 0
        assert "1. Kant | Insight number 1 about freedom." in out
        assert "[complete 2/2]" in out

    def test_analyze_outline(self, stub_cli, tmp_path, capsys):
        source = tmp_path / "book.txt"
        source.write_text(" ".join(f"w{i}" for i in range(3000)), encoding="utf-8")

        assert cli.main(["analyze", "outline", str(source)]) == 0
        out = capsys.readouterr().out
        assert "1. Section 1 title" in out
        assert "   Themes: theme 2a, theme 2b" in out

    def test_custom_command(self, stub_cli, tmp_path, capsys):
        source = tmp_path / "book.txt"
        source.write_text(" ".join(f"w{i}" for i in range(3000)), encoding="utf-8")

        code = cli.main(["custom", str(source), "--instructions", "Evaluate each argument"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Body text for unit 2." in out
        assert all("Evaluate each argument" in i for _, i in stub_cli.unit_calls())

    def test_write_plan_only_then_status(self, stub_cli, capsys):
        assert cli.main(["write", "Essay on freedom", "--words", "3000", "--plan-only"]) == 0
        out = capsys.readouterr().out
        assert "1. Heading 1 (1000 words) - Goal 1" in out
        assert stub_cli.unit_calls() == []

        document_id = out.strip().splitlines()[-1].split(": ")[1]
        assert cli.main(["status", document_id]) == 0
        assert "0/3 units done" in capsys.readouterr().out

    def test_failed_run_prints_resume_hint(self, stub_cli, tmp_path, capsys):
        stub_cli.fail_units.add(2)
        output = tmp_path / "essay.md"

        code = cli.main(["write", "Essay on freedom", "--words", "3000", "-o", str(output)])

        out = capsys.readouterr().out
        assert code == 1
        assert "Unit 2 failed: provider exploded" in out
        assert "Resume with: longform resume" in out
        assert "Body text for unit 1." in output.read_text(encoding="utf-8")

    def test_unknown_job(self, stub_cli, capsys):
        assert cli.main(["resume", "missing"]) == 2
        assert "Job not found: missing" in capsys.readouterr().err
