from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from sportsfeed.descriptors.models import EndpointDescriptor
from sportsfeed.errors import CatalogLoadError, EndpointNotFound

logger = logging.getLogger(__name__)

DescriptorSource = Union[str, Path, Mapping[str, Any]]

# Fields that must be present and non-empty on every endpoint entry.
_REQUIRED_FIELDS = ("id", "path", "category")


@dataclass(frozen=True)
class _CatalogIndex:
    """One complete, immutable snapshot of the catalog."""

    by_id: Dict[str, EndpointDescriptor] = field(default_factory=dict)
    by_category: Dict[str, List[EndpointDescriptor]] = field(default_factory=dict)
    ordered: List[EndpointDescriptor] = field(default_factory=list)
    version: Optional[str] = None
    namespace: Optional[str] = None


class DescriptorCatalog:
    """
    Loads, validates, and serves EndpointDescriptor objects.

    Source: a YAML document with optional `version` / `sport` fields and a
    top-level `endpoints` list. A load either succeeds completely and
    replaces the previous index in one reference swap, or fails with
    CatalogLoadError and leaves the previous index authoritative. Readers
    always see one whole snapshot, never a mix of two loads.

    The catalog is an ordinary instance owned by the host; nothing here is
    process-global, so tests can run independent catalogs side by side.
    """

    def __init__(self) -> None:
        self._index = _CatalogIndex()
        self._lock = threading.RLock()
        self._source_path: Optional[Path] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, source: DescriptorSource) -> None:
        """
        Parse `source` (file path, YAML text, or parsed mapping) and swap it in.

        Raises:
            CatalogLoadError: on unreadable YAML, a missing `endpoints` list,
                any endpoint failing structural validation, or duplicate ids.
        """
        document, path = self._read_source(source)
        index = self._build_index(document)

        with self._lock:
            self._index = index
            if path is not None:
                self._source_path = path

        logger.info(
            "DescriptorCatalog loaded %d endpoint(s) (namespace=%s, version=%s).",
            len(index.ordered), index.namespace, index.version,
        )

    def load_file(self, path: Union[str, Path]) -> None:
        self.load(Path(path))

    def reload(self) -> None:
        """Re-read the last file-backed source. Previous index survives on failure."""
        with self._lock:
            path = self._source_path
        if path is None:
            raise CatalogLoadError("catalog was not loaded from a file; nothing to reload")
        logger.info("Reloading descriptor catalog from %s", path)
        self.load(path)

    def _read_source(self, source: DescriptorSource) -> tuple[Mapping[str, Any], Optional[Path]]:
        if isinstance(source, Mapping):
            return source, None

        path: Optional[Path] = None
        if isinstance(source, Path):
            path = source
        elif "\n" not in source and source.strip().endswith((".yaml", ".yml")):
            path = Path(source)

        try:
            text = path.read_text(encoding="utf-8") if path is not None else source
            document = yaml.safe_load(text)
        except (OSError, yaml.YAMLError) as exc:
            logger.error("Failed to read descriptor source %s: %s", path or "<text>", exc)
            raise CatalogLoadError(f"unreadable descriptor source: {exc}") from exc

        if not isinstance(document, Mapping):
            raise CatalogLoadError("descriptor source must be a mapping with an 'endpoints' list")
        return document, path

    def _build_index(self, document: Mapping[str, Any]) -> _CatalogIndex:
        entries = document.get("endpoints")
        if not isinstance(entries, list):
            raise CatalogLoadError("descriptor source has no 'endpoints' list")

        by_id: Dict[str, EndpointDescriptor] = {}
        by_category: Dict[str, List[EndpointDescriptor]] = {}
        ordered: List[EndpointDescriptor] = []

        for i, raw in enumerate(entries):
            descriptor = self._parse_entry(i, raw)
            if descriptor.id in by_id:
                raise CatalogLoadError(f"duplicate endpoint id '{descriptor.id}' (entry #{i})")
            by_id[descriptor.id] = descriptor
            by_category.setdefault(descriptor.category, []).append(descriptor)
            ordered.append(descriptor)

        sport = document.get("sport")
        version = document.get("version")
        return _CatalogIndex(
            by_id=by_id,
            by_category=by_category,
            ordered=ordered,
            version=str(version) if version is not None else None,
            namespace=str(sport) if sport is not None else None,
        )

    @staticmethod
    def _parse_entry(i: int, raw: Any) -> EndpointDescriptor:
        if not isinstance(raw, Mapping):
            raise CatalogLoadError(f"endpoint entry #{i} is not a mapping")

        label = raw.get("id") or f"#{i}"
        for name in _REQUIRED_FIELDS:
            value = raw.get(name)
            if value is None or not str(value).strip():
                raise CatalogLoadError(
                    f"endpoint {label} missing required field: {name}",
                    endpoint_id=raw.get("id") or None,
                )

        try:
            return EndpointDescriptor.model_validate(raw)
        except ValidationError as exc:
            logger.error("Invalid descriptor %s: %s", label, exc)
            raise CatalogLoadError(
                f"endpoint {label} is invalid: {exc}", endpoint_id=raw.get("id")
            ) from exc

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def _snapshot(self) -> _CatalogIndex:
        with self._lock:
            return self._index

    def get(self, endpoint_id: str) -> EndpointDescriptor:
        descriptor = self._snapshot().by_id.get(endpoint_id)
        if descriptor is None:
            raise EndpointNotFound(f"unknown endpoint '{endpoint_id}'", endpoint_id=endpoint_id)
        return descriptor

    def find(self, endpoint_id: str) -> Optional[EndpointDescriptor]:
        """Return the descriptor for endpoint_id, or None if unknown."""
        return self._snapshot().by_id.get(endpoint_id)

    def all(self) -> List[EndpointDescriptor]:
        return list(self._snapshot().ordered)

    def categories(self) -> List[str]:
        return list(self._snapshot().by_category.keys())

    def list_by_category(self, category: str) -> List[EndpointDescriptor]:
        return list(self._snapshot().by_category.get(category, []))

    def search(self, query: Optional[str]) -> List[EndpointDescriptor]:
        """Case-insensitive match on id, description, keywords or category. Blank → everything."""
        index = self._snapshot()
        if query is None or not query.strip():
            return list(index.ordered)

        needle = query.strip().lower()
        return [d for d in index.ordered if _matches(d, needle)]

    @property
    def version(self) -> Optional[str]:
        return self._snapshot().version

    @property
    def namespace(self) -> Optional[str]:
        return self._snapshot().namespace

    def count(self) -> int:
        return len(self._snapshot().ordered)


def _matches(descriptor: EndpointDescriptor, needle: str) -> bool:
    if needle in descriptor.id.lower():
        return True
    if needle in descriptor.description.lower():
        return True
    if any(needle in k.lower() for k in descriptor.keywords):
        return True
    return needle in descriptor.category.lower()
