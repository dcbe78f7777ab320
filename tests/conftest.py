"""Shared fixtures for packer_images tests."""

from pathlib import Path

import pytest

from packer_images.config import Settings


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """Create a minimal Packer template directory."""
    templates = tmp_path / "repo"
    templates.mkdir()
    (templates / "main.pkr.hcl").write_text('packer {\n  required_plugins {}\n}\n')
    return templates


@pytest.fixture
def settings(tmp_path: Path, template_dir: Path) -> Settings:
    """Settings isolated in a temporary directory."""
    return Settings(
        repo_root=template_dir,
        lock_dir=tmp_path / "locks",
        log_dir=tmp_path / "logs",
        pipeline_timeout=600,
        _env_file=None,
    )
