"""
Locate ``config.json`` and ``logging.ini`` for batch tools and the deployed trigger.

A checkout is found by walking up to ``pyproject.toml`` or ``.git``. The
deployed function ships without either, so ``TOPLIST_ROOT`` can point at the
directory holding the config files; failing both, the working directory is
used.
"""

from __future__ import annotations

import os
from pathlib import Path

ROOT_ENV_VAR = "TOPLIST_ROOT"
ROOT_MARKERS = ("pyproject.toml", ".git")


def find_repo_root(start: Path | None = None) -> Path:
    current = (start or Path(__file__).resolve()).resolve()
    if current.is_file():
        current = current.parent

    for candidate in [current, *current.parents]:
        if any((candidate / marker).exists() for marker in ROOT_MARKERS):
            return candidate
    raise RuntimeError(f"No {' or '.join(ROOT_MARKERS)} above {current}")


def repo_root() -> Path:
    override = os.getenv(ROOT_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    try:
        return find_repo_root(Path(__file__).resolve())
    except RuntimeError:
        return Path.cwd()


def repo_file(*parts: str) -> Path:
    return repo_root().joinpath(*parts)
