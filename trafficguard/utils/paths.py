"""Path helpers."""
from __future__ import annotations


def path_prefix(path: str, segments: int) -> str:
    """Return the first ``segments`` pieces of ``path`` split on ``/``.

    The leading empty piece counts, so ``path_prefix("/api/auth/login", 3)``
    is ``"/api/auth"``.
    """

    return "/".join(path.split("/")[:segments])
