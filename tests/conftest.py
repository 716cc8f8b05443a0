"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import shutil

import pytest

_REQUIRED_BINARIES = {
    "requires_tar": "tar",
    "requires_git": "git",
}


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests whose external command is not installed."""
    for marker, binary in _REQUIRED_BINARIES.items():
        if shutil.which(binary) is not None:
            continue
        skip_marker = pytest.mark.skip(reason=f"The {binary} command is required.")
        for item in items:
            if marker in item.keywords:
                item.add_marker(skip_marker)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "requires_tar: test extracts real tar archives")
    config.addinivalue_line("markers", "requires_git: test drives a real git checkout")
