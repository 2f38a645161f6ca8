from __future__ import annotations
from typing import Any


class _Missing:
    """Sentinel for 'no value here': absent key, JSON null, or a non-object on the way."""

    _instance = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def lookup(node: Any, path: str) -> Any:
    """
    Follow a dotted path ("fixture.venue.name") through nested dicts.

    Returns MISSING as soon as a key is absent, a value is JSON null, or an
    intermediate node is not a dict. An empty path returns the node itself.
    """
    current = node
    if path:
        for key in path.split("."):
            if not isinstance(current, dict):
                return MISSING
            current = current.get(key, MISSING)
            if current is MISSING:
                return MISSING
    return MISSING if current is None else current


def is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))
