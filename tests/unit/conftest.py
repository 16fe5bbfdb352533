"""Shared fixtures for unit tests."""

import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest


@pytest.fixture
def socket_path() -> Iterator[Path]:
    """Short socket path; pytest's tmp_path can exceed the AF_UNIX length limit."""
    directory = tempfile.mkdtemp(prefix="tk")
    try:
        yield Path(directory) / "host.sock"
    finally:
        shutil.rmtree(directory, ignore_errors=True)
