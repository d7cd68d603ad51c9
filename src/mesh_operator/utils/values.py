"""Dotted-path access to the free-form settings document."""

from __future__ import annotations

import copy
from typing import Any


class Values(dict[str, Any]):
    """Settings document with helpers addressing nested keys by dotted path.

    Unknown keys are carried through untouched.
    """

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Values:
        """Deep-copy a plain document into a Values instance."""
        return cls(copy.deepcopy(data) if data else {})

    def get_path(self, path: str, default: Any = None) -> Any:
        """Get the value at ``path`` (e.g. ``global.istioNamespace``)."""
        current: Any = self
        for part in path.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def get_bool(self, path: str) -> bool:
        """Get a boolean value; missing values read as False.

        Raises:
            TypeError: If the value is present but not a boolean.
        """
        value = self.get_path(path)
        if value is None:
            return False
        if not isinstance(value, bool):
            raise TypeError(f"value at {path} is {type(value).__name__}, not a boolean")
        return value

    def get_string(self, path: str) -> str:
        """Get a string value; missing values read as ``""``."""
        value = self.get_path(path)
        if value is None:
            return ""
        if not isinstance(value, str):
            raise TypeError(f"value at {path} is {type(value).__name__}, not a string")
        return value

    def set_path(self, path: str, value: Any) -> None:
        """Set a value at ``path``, creating intermediate mappings as needed.

        Raises:
            TypeError: If an intermediate key holds a non-mapping value.
        """
        parts = path.split(".")
        current: dict[str, Any] = self
        for part in parts[:-1]:
            nxt = current.get(part)
            if nxt is None:
                nxt = {}
                current[part] = nxt
            elif not isinstance(nxt, dict):
                raise TypeError(f"cannot set {path}: {part} is not a mapping")
            current = nxt
        current[parts[-1]] = value

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy as a plain dict."""
        return copy.deepcopy(dict(self))
