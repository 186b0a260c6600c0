"""Gatehouse: admission-control core.

Decides whether a connecting identity may enter, tracks the external identity
linking workflow, enforces time-bounded exclusions, and records every
security-relevant change in a hash-chained audit log.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ---------------------------------------------------------------------------
# Package version, read from pyproject.toml via importlib.metadata.
#
# If the package is imported without being installed (running from a source
# checkout with ``src`` on the path), fall back to the last released version.
# ---------------------------------------------------------------------------
try:
    __version__: str = version("gatehouse")
except PackageNotFoundError:
    __version__ = "0.3.0"
