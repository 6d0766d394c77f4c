from __future__ import annotations

import os
from pathlib import Path


def default_rmatchd_dir() -> Path:
    override = os.environ.get("RMATCHD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".rmatchd"


def default_config_path() -> Path:
    return default_rmatchd_dir() / "rmatchd.toml"


def default_identity_path() -> Path:
    return default_rmatchd_dir() / "hub_identity"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
