"""Settings document merge utilities.

The settings tree handed to charts is built by overlaying documents on top
of each other. Only nested mappings are merged; every other value, lists
included, is replaced wholesale by the overriding document.
"""

from __future__ import annotations

import copy
from typing import Any


def merge_overwrite(base: dict[str, Any] | None, override: dict[str, Any] | None) -> dict[str, Any]:
    """Recursively merge ``override`` on top of ``base``.

    Neither argument is mutated.

    Args:
        base: Base document. None is treated as empty.
        override: Document whose values win.

    Returns:
        New merged document.

    Example:
        >>> merge_overwrite({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": [1]})
        {'a': {'b': 1, 'c': 3}, 'd': [1]}
    """
    merged = copy.deepcopy(base) if base else {}
    for key, value in (override or {}).items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = merge_overwrite(existing, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
