from __future__ import annotations
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import pandas as pd

from sportsfeed.descriptors.models import (
    ArrayStrategy,
    FlattenSpec,
    NestedArrayRule,
    NestedObjectRule,
    ObjectStrategy,
    ResponseShape,
    ResponseType,
)
from sportsfeed.errors import FlattenWarning
from sportsfeed.flatten.lookup import MISSING, is_scalar, lookup

logger = logging.getLogger(__name__)

Cell = Union[int, float, str, bool, None]
Row = Dict[str, Cell]
Cancelled = Callable[[], bool]
WarningSink = Callable[[int, FlattenWarning], None]


@dataclass
class FlattenResult:
    """Uniformly shaped rows: every row carries every column, absent cells are None."""

    columns: List[str] = field(default_factory=list)
    rows: List[Row] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skipped: int = 0
    cancelled: bool = False

    def extend(self, rows: Sequence[Row]) -> None:
        known = set(self.columns)
        for row in rows:
            for col in row:
                if col not in known:
                    known.add(col)
                    self.columns.append(col)
            self.rows.append(row)

    def normalize(self) -> "FlattenResult":
        self.rows = [{col: row.get(col) for col in self.columns} for row in self.rows]
        return self

    def to_frame(self) -> pd.DataFrame:
        if not self.rows:
            return pd.DataFrame(columns=self.columns)
        return pd.DataFrame(self.rows, columns=self.columns)

    def __len__(self) -> int:
        return len(self.rows)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def flatten(
    shape: ResponseShape,
    payload: Any,
    cancelled: Optional[Cancelled] = None,
) -> FlattenResult:
    """Flatten a whole response into a FlattenResult (see iter_rows for the rules)."""
    result = FlattenResult()

    def on_warning(index: int, exc: FlattenWarning) -> None:
        result.warnings.append(f"element #{index}: {exc}")
        result.skipped += 1

    def on_cancel(index: int) -> None:
        result.cancelled = True

    result.extend(list(iter_rows(
        shape, payload, cancelled=cancelled, on_warning=on_warning, on_cancel=on_cancel,
    )))
    return result.normalize()


def iter_rows(
    shape: ResponseShape,
    payload: Any,
    cancelled: Optional[Cancelled] = None,
    on_warning: Optional[WarningSink] = None,
    on_cancel: Optional[Callable[[int], None]] = None,
) -> Iterator[Row]:
    """
    Yield rows for each element under shape.root_path.

    Per element: top-level scalars → nested object rules → nested array
    rules → Cartesian product over exploded arrays → renames → excludes.
    A malformed element is logged, reported to on_warning, and skipped.
    `cancelled` is polled before every element; once it returns True no
    further rows are produced and on_cancel receives the index it stopped at.
    """
    spec = shape.flatten
    for index, element in enumerate(_elements(shape, payload)):
        if cancelled is not None and cancelled():
            logger.info("Flattening cancelled after %d element(s)", index)
            if on_cancel is not None:
                on_cancel(index)
            return
        try:
            rows = flatten_element(spec, element)
        except FlattenWarning as exc:
            logger.warning("Skipping malformed element #%d: %s", index, exc)
            if on_warning is not None:
                on_warning(index, exc)
            continue
        yield from rows


def flatten_element(spec: FlattenSpec, element: Any) -> List[Row]:
    """Rows for one response element. Raises FlattenWarning if the element is malformed."""
    if not isinstance(element, dict):
        raise FlattenWarning(f"expected an object, got {type(element).__name__}")

    base: Row = {}

    # 1. Immediate scalar fields
    for key, value in element.items():
        if value is None or is_scalar(value):
            base[spec.prefix + key] = value

    # 2. Nested objects
    for rule in spec.nested_objects:
        _apply_object_rule(spec.prefix, rule, element, base)

    # 3. Nested arrays (explosions deferred)
    exploded: List[Tuple[NestedArrayRule, list]] = []
    for rule in spec.nested_arrays:
        items = _apply_array_rule(spec.prefix, rule, element, base)
        if items:
            exploded.append((rule, items))

    # 4. Row multiplication
    if exploded:
        per_rule = [
            [_exploded_cells(spec.prefix, rule, item) for item in items]
            for rule, items in exploded
        ]
        rows = []
        for combo in itertools.product(*per_rule):
            row = dict(base)
            for cells in combo:
                row.update(cells)
            rows.append(row)
    else:
        rows = [base]

    # 5 + 6. Renames, then excludes
    renames = spec.renames
    excluded = set(spec.exclude_columns)
    return [_finish(row, renames, excluded) for row in rows]


# ---------------------------------------------------------------------------
# Rule handlers
# ---------------------------------------------------------------------------

def _apply_object_rule(prefix: str, rule: NestedObjectRule, element: dict, row: Row) -> None:
    value = lookup(element, rule.path)

    if rule.strategy is ObjectStrategy.JSON:
        if value is not MISSING and not isinstance(value, (dict, list)):
            raise FlattenWarning(f"'{rule.path}' is not an object")
        row[prefix + _single_column(rule)] = None if value is MISSING else _to_json(value)
        return

    if value is MISSING:
        return
    if not isinstance(value, dict):
        raise FlattenWarning(f"'{rule.path}' is not an object")
    sub_prefix = prefix + _sub_prefix(rule)
    for key, sub in value.items():
        if sub is None or is_scalar(sub):
            row[sub_prefix + key] = sub


def _apply_array_rule(
    prefix: str, rule: NestedArrayRule, element: dict, row: Row
) -> Optional[list]:
    """Handle ignore/stringify in place; return the items to explode, if any."""
    if rule.strategy is ArrayStrategy.IGNORE:
        return None

    value = lookup(element, rule.path)
    if value is not MISSING and not isinstance(value, list):
        raise FlattenWarning(f"'{rule.path}' is not an array")

    if rule.strategy is ArrayStrategy.STRINGIFY:
        row[prefix + _single_column(rule)] = None if value is MISSING else _to_json(value)
        return None

    # explode: an absent or empty array leaves the row count unchanged
    if value is MISSING or not value:
        return None
    return value


def _exploded_cells(prefix: str, rule: NestedArrayRule, item: Any) -> Row:
    if isinstance(item, dict):
        cells: Row = {}
        _collect_fields(item, prefix + _sub_prefix(rule), cells)
        return cells
    if isinstance(item, list):
        return {prefix + _single_column(rule): _to_json(item)}
    return {prefix + _single_column(rule): item}


def _collect_fields(node: dict, prefix: str, cells: Row) -> None:
    """Scalars as-is, nested objects with a key_ sub-prefix, nested arrays as JSON text."""
    for key, value in node.items():
        if value is None or is_scalar(value):
            cells[prefix + key] = value
        elif isinstance(value, dict):
            _collect_fields(value, f"{prefix}{key}_", cells)
        else:
            cells[prefix + key] = _to_json(value)


def _finish(row: Row, renames: Dict[str, str], excluded: set) -> Row:
    out: Row = {}
    for col, value in row.items():
        name = renames.get(col, col)
        if name not in excluded:
            out[name] = value
    return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _elements(shape: ResponseShape, payload: Any) -> List[Any]:
    root = lookup(payload, shape.root_path) if shape.root_path else payload
    if root is MISSING:
        logger.warning("Response has no '%s' node; nothing to flatten", shape.root_path)
        return []
    if isinstance(root, list):
        if shape.type is ResponseType.OBJECT:
            logger.debug("Expected an object under '%s', got an array", shape.root_path)
        return root
    if isinstance(root, dict):
        return [root]
    logger.warning("'%s' node is a %s; nothing to flatten", shape.root_path, type(root).__name__)
    return []


def _stem(path: str) -> str:
    return path.replace(".", "_")


def _sub_prefix(rule: Union[NestedObjectRule, NestedArrayRule]) -> str:
    return rule.prefix if rule.prefix else _stem(rule.path) + "_"


def _single_column(rule: Union[NestedObjectRule, NestedArrayRule]) -> str:
    return rule.prefix.rstrip("_") if rule.prefix else _stem(rule.path)


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
