"""Question key codec -- maps operator-chosen keys to filesystem/URL-safe keys."""

import re

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def to_safe_key(key: str) -> str:
    """Return *key* with every character outside ``[A-Za-z0-9_-]`` replaced by ``_``.

    Case is preserved.  The mapping is pure and idempotent, so passing an
    already-safe key through it again is harmless.
    """
    return _UNSAFE_CHARS.sub("_", key)
