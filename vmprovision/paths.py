from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/vmprovision"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for vmprovision state.

    The location can be overridden via the ``VMPROVISION_BASE_PATH``
    environment variable.
    """

    override = os.environ.get("VMPROVISION_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    override = os.environ.get("VMPROVISION_LOG_DIR")
    if override:
        return _expand(override)
    return str(Path(base_path()) / "logs")
