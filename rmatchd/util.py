from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_identity(value) -> str | None:
    """Return ``value`` if it can name a user, else None.

    Identities are opaque: no format rules beyond being a non-blank string.
    The value is returned unchanged so HTTP and link callers agree on keys.
    """
    if not isinstance(value, str):
        return None
    if not value.strip():
        return None
    return value


def normalize_text(value) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None
