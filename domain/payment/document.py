"""
Typed read access to gateway JSON.

Gateway responses are arbitrary nested maps. ``GatewayDocument`` wraps one
node of such a tree and only hands out values of the requested shape, so
callers never cast blindly. Missing or mistyped keys read as ``None`` (or an
empty document/list), which keeps unknown gateway fields forward-compatible.
"""
from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Iterator, Optional


class GatewayDocument(Mapping):
    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        self._data: dict[str, Any] = dict(data) if data else {}

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"GatewayDocument({self._data!r})"

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Scalar value rendered as a string; objects and arrays are not strings."""
        value = self._data.get(key)
        if value is None or isinstance(value, (dict, list)):
            return default
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._data.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return default

    def get_nested(self, key: str) -> "GatewayDocument":
        value = self._data.get(key)
        return GatewayDocument(value) if isinstance(value, dict) else GatewayDocument()

    def get_list(self, key: str) -> list["GatewayDocument"]:
        value = self._data.get(key)
        if not isinstance(value, list):
            return []
        return [GatewayDocument(item) for item in value if isinstance(item, dict)]

    def has_object(self, key: str) -> bool:
        return isinstance(self._data.get(key), dict)

    def find_str(self, *paths: str) -> Optional[str]:
        """First non-empty string among dotted paths, e.g. ``"result.code"``."""
        for path in paths:
            node: GatewayDocument = self
            *parents, leaf = path.split(".")
            for part in parents:
                node = node.get_nested(part)
            value = node.get_str(leaf)
            if value:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)
