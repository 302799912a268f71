"""Pytest configuration and fixtures for notes-attendant tests."""

from pathlib import Path

import pytest

from notes_attendant.config import AttendantConfig
from notes_attendant.operations import VaultOperations
from notes_attendant.pipeline import TransformPipeline


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the user's configuration and environment out of every test."""
    monkeypatch.setenv("NTA_CONFIG", str(tmp_path / "nta" / "config.yaml"))
    for name in ("NTA_VAULT_ROOT", "NTA_APOD_KEY", "NTA_MAX_CONCURRENCY", "NTA_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def test_vault_path(tmp_path: Path) -> Path:
    """Create a temporary test vault directory."""
    vault_dir = tmp_path / "test_vault"
    vault_dir.mkdir()
    (vault_dir / "files").mkdir()
    (vault_dir / "daily").mkdir()
    return vault_dir


@pytest.fixture
def test_config(test_vault_path: Path) -> AttendantConfig:
    """Create test configuration."""
    return AttendantConfig(vault_root=test_vault_path, apod_key="DEMO_KEY", max_concurrency=4)


@pytest.fixture
def operations(test_config: AttendantConfig) -> VaultOperations:
    """Create vault operations over the test vault."""
    return VaultOperations(test_config, TransformPipeline.from_config(test_config))


@pytest.fixture
def sample_notes(test_vault_path: Path) -> dict[str, Path]:
    """
    Create sample notes in the test vault.

    Returns:
        Dictionary mapping note names to their paths
    """
    notes = {}

    # Note without front matter
    plain = test_vault_path / "plain.md"
    plain.write_text("# Plain\n\nSee [[projects |  The projects]] and photo.png.\n")
    notes["plain"] = plain

    # Note with front matter and a legacy banner
    issue = test_vault_path / "issue.md"
    issue.write_text(
        """---
type: issue
tags:
- issue/apod
- astronomy
banner: "[[space.png]]"
created: 2024-01-05T10:00:00
---
# Issue

![[photo.png]]
"""
    )
    notes["issue"] = issue

    # Note with an unterminated front matter block
    broken = test_vault_path / "broken.md"
    broken.write_text("---\ntype: issue\n\nNo closing delimiter here.\n")
    notes["broken"] = broken

    # Note in subfolder
    subfolder = test_vault_path / "projects"
    subfolder.mkdir()
    project = subfolder / "project.md"
    project.write_text("---\ntype: project\ntags: [work]\n---\n\n# Project\n")
    notes["project"] = project

    # Canvas referring to an attachment
    canvas = test_vault_path / "board.canvas"
    canvas.write_text('{"nodes": [{"file": "files/diagram.svg"}]}')
    notes["board"] = canvas

    return notes


@pytest.fixture
def sample_attachments(test_vault_path: Path) -> dict[str, Path]:
    """Create attachment files; only ``unused.pdf`` is never referenced."""
    files_dir = test_vault_path / "files"
    attachments = {}
    for name in ("photo.png", "space.png", "diagram.svg", "unused.pdf"):
        path = files_dir / name
        path.write_bytes(name.encode())
        attachments[name] = path
    return attachments
