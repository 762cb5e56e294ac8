"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for iam_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from iam_mock import FakeIdentityService  # noqa: E402

from iam_reconciler.config import Config  # noqa: E402


@pytest.fixture
def specs_dir(tmp_path: Path) -> Path:
    path = tmp_path / "specs"
    path.mkdir()
    return path


@pytest.fixture
def config(specs_dir: Path) -> Config:
    return Config(
        mail_sender="iam-admin@example.com",
        email_domain="example.com",
        specs_dir=specs_dir,
    )


@pytest.fixture
def iam() -> FakeIdentityService:
    return FakeIdentityService(label="test")
