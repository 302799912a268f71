"""Tests for the command line interface."""

import logging
import os
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from notes_attendant.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop the handlers each invocation installs on the root logger."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)


@pytest.fixture
def vault_env(test_vault_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at the test vault."""
    monkeypatch.setenv("NTA_VAULT_ROOT", str(test_vault_path))
    return test_vault_path


def test_no_arguments_shows_help() -> None:
    """Test that the bare command prints usage."""
    result = runner.invoke(app, [])
    assert "Usage" in result.output


def test_repair(vault_env: Path, sample_notes: dict[str, Path]) -> None:
    """Test running several repairs in one invocation."""
    result = runner.invoke(app, ["-v", "repair", "--wiki-refs", "--banners"])

    assert result.exit_code == 0, result.output
    assert "Repaired wiki references" in result.output
    assert "Repaired banners" in result.output
    assert "[[projects|The projects]]" in sample_notes["plain"].read_text()
    assert "![[space.png]]" in sample_notes["issue"].read_text()


def test_repair_without_options(vault_env: Path) -> None:
    """Test that repair needs at least one option."""
    result = runner.invoke(app, ["repair"])
    assert result.exit_code == 2


def test_repair_reports_completed_options_before_fatal_error(
    vault_env: Path, sample_notes: dict[str, Path]
) -> None:
    """Test that options finished before a fatal error are still reported."""
    (vault_env / "files").rmdir()

    result = runner.invoke(app, ["repair", "--wiki-refs", "--remove-unused-files"])

    assert result.exit_code == 2
    assert "Repaired wiki references" in result.output
    assert "attachments directory does not exist" in result.output
    assert "[[projects|The projects]]" in sample_notes["plain"].read_text()


def test_missing_vault_root() -> None:
    """Test that an unset root exits with code 2."""
    result = runner.invoke(app, ["repair", "--wiki-refs"])
    assert result.exit_code == 2
    assert "vault root" in result.output


def test_partial_failure_exit_code(vault_env: Path) -> None:
    """Test that a failed file exits with code 1 after processing the rest."""
    good = vault_env / "good.md"
    good.write_text("text\nobsolete line\n")
    (vault_env / "binary.md").write_bytes(b"\xff\xfe obsolete line")

    result = runner.invoke(app, ["remove", "line", "obsolete line"])

    assert result.exit_code == 1
    assert "1 operation(s) failed" in result.output
    assert good.read_text() == "text\n"


def test_add_calendar(vault_env: Path) -> None:
    """Test adding a calendar for an explicit month."""
    monthly = vault_env / "daily" / "2024-02.md"
    monthly.write_text("# February\n")

    result = runner.invoke(app, ["add", "calendar", "-y", "2024", "-m", "2"])

    assert result.exit_code == 0, result.output
    assert "| Mo | Tu | We | Th | Fr | Sa | Su |" in monthly.read_text()


def test_add_calendar_missing_note(vault_env: Path) -> None:
    """Test that a missing monthly note exits with code 2."""
    result = runner.invoke(app, ["add", "calendar", "-y", "2024", "-m", "3"])
    assert result.exit_code == 2
    assert "Monthly note not found" in result.output


def test_remove_empty_line_is_rejected(vault_env: Path) -> None:
    """Test that an empty line argument exits with code 2."""
    result = runner.invoke(app, ["remove", "line", "  "])
    assert result.exit_code == 2
    assert "must not be empty" in result.output


def test_grab_twir_rejects_illegal_issues(vault_env: Path) -> None:
    """Test issue range validation."""
    result = runner.invoke(app, ["grab", "twir", "--issues", "10-5"])
    assert result.exit_code == 2
    assert "Illegal issue number" in result.output


def test_config_sets_values(test_vault_path: Path) -> None:
    """Test writing configuration values."""
    result = runner.invoke(app, ["config", "vault.root", str(test_vault_path)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["config", "twir.marker", "## Reading"])
    assert result.exit_code == 0, result.output

    data = yaml.safe_load(Path(os.environ["NTA_CONFIG"]).read_text())
    assert data["vault"]["root"] == str(test_vault_path.resolve())
    assert data["twir"]["marker"] == "## Reading"


def test_config_does_not_save_environment(
    test_vault_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that environment overrides stay out of the file."""
    monkeypatch.setenv("NTA_APOD_KEY", "SECRET")
    result = runner.invoke(app, ["config", "vault.root", str(test_vault_path)])
    assert result.exit_code == 0, result.output
    assert "SECRET" not in Path(os.environ["NTA_CONFIG"]).read_text()


def test_config_unknown_key() -> None:
    """Test that unknown keys exit with code 2."""
    result = runner.invoke(app, ["config", "vault.colour", "blue"])
    assert result.exit_code == 2
    assert "Illegal configuration key" in result.output
