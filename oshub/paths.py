from __future__ import annotations

import os
from pathlib import Path
from typing import NamedTuple


class DefaultPaths(NamedTuple):
    home: Path
    config: Path
    identity: Path
    store: Path


def default_paths(home: str | os.PathLike | None = None) -> DefaultPaths:
    """File locations under ``home``, ``$OSHUB_HOME`` or ``~/.oshub``."""
    if home is None:
        home = os.environ.get("OSHUB_HOME") or (Path.home() / ".oshub")
    base = Path(home)
    return DefaultPaths(
        home=base,
        config=base / "oshub.toml",
        identity=base / "hub_identity",
        store=base / "sessions.toml",
    )


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # May fail on filesystems without POSIX modes.
        os.chmod(path, 0o700)
    except OSError:
        pass
