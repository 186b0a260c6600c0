"""Tests for dynamic version management.

Verifies that ``gatehouse.__version__`` is resolved from the installed
package metadata and stays in step with ``pyproject.toml``.
"""

from __future__ import annotations

import re
import tomllib
from pathlib import Path

import pytest

import gatehouse

_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(-[A-Za-z0-9]+(\.[A-Za-z0-9]+)*)?$")

_PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


@pytest.mark.unit
class TestVersionAttribute:
    """Verify the ``gatehouse.__version__`` package attribute."""

    def test_version_is_a_string(self):
        assert isinstance(gatehouse.__version__, str)

    def test_version_is_semver(self):
        assert _SEMVER_RE.match(gatehouse.__version__), gatehouse.__version__

    def test_version_matches_pyproject(self):
        with _PYPROJECT.open("rb") as fh:
            declared = tomllib.load(fh)["project"]["version"]
        assert gatehouse.__version__ == declared
