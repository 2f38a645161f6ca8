from __future__ import annotations
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _as_text(value: Any) -> Optional[str]:
    """YAML scalars (ints, bools, dates) → the string form sent on the wire."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _Descriptor(BaseModel):
    """Frozen, alias-aware base for every descriptor block."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Closed enumerations (parsed once at load time, case-insensitive)
# ---------------------------------------------------------------------------

class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"


class ParameterType(str, Enum):
    INTEGER = "integer"
    STRING = "string"
    BOOLEAN = "boolean"
    DATE = "date"
    ENUM = "enum"


class CachePolicy(str, Enum):
    STATIC = "static"
    REFERENCE = "reference"
    HOURLY = "hourly"
    LIVE = "live"
    NONE = "none"


class ResponseType(str, Enum):
    ARRAY = "array"
    OBJECT = "object"


class ObjectStrategy(str, Enum):
    FLATTEN = "flatten"
    JSON = "json"


class ArrayStrategy(str, Enum):
    STRINGIFY = "stringify"
    EXPLODE = "explode"
    IGNORE = "ignore"


# Seconds of cache lifetime for each policy when no explicit ttl is given.
POLICY_TTL_S: Dict[CachePolicy, int] = {
    CachePolicy.STATIC: 30 * 24 * 3600,
    CachePolicy.REFERENCE: 24 * 3600,
    CachePolicy.HOURLY: 3600,
    CachePolicy.LIVE: 300,
    CachePolicy.NONE: 0,
}


# ---------------------------------------------------------------------------
# Parameters and validation rules
# ---------------------------------------------------------------------------

class ParameterDescriptor(_Descriptor):
    """One query parameter accepted by an endpoint."""

    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    description: str = ""
    default: Optional[str] = Field(default=None, alias="default")

    # integer bounds
    min: Optional[int] = None
    max: Optional[int] = None

    # string constraints
    pattern: Optional[str] = None
    min_length: Optional[int] = Field(default=None, alias="minLength")
    max_length: Optional[int] = Field(default=None, alias="maxLength")

    # enum values and their display labels (parallel tuples)
    enum_values: Tuple[str, ...] = Field(default=(), alias="enum")
    enum_labels: Tuple[str, ...] = Field(default=(), alias="enumLabels")

    # strptime pattern for date parameters
    format: str = "%Y-%m-%d"

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, v: Any) -> Any:
        return _lower(v)

    @field_validator("pattern")
    @classmethod
    def _compile_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as exc:
                raise ValueError(f"invalid pattern {v!r}: {exc}") from None
        return v

    @field_validator("default", mode="before")
    @classmethod
    def _default_text(cls, v: Any) -> Optional[str]:
        return _as_text(v)

    @field_validator("enum_labels", mode="before")
    @classmethod
    def _labels_text(cls, v: Any) -> Any:
        return [str(x) for x in v] if isinstance(v, (list, tuple)) else v

    @model_validator(mode="before")
    @classmethod
    def _split_enum_mapping(cls, data: Any) -> Any:
        # `enum` may be a list of values or a {value: label} mapping.
        if not isinstance(data, dict):
            return data
        key = "enum" if "enum" in data else "enum_values"
        raw = data.get(key)
        if isinstance(raw, dict):
            data = dict(data)
            data[key] = [_as_text(k) for k in raw.keys()]
            data.setdefault("enumLabels", [str(label) for label in raw.values()])
        elif isinstance(raw, (list, tuple)):
            data = dict(data)
            data[key] = [_as_text(x) for x in raw]
        return data

    @model_validator(mode="after")
    def _check_enum_declared(self) -> "ParameterDescriptor":
        if self.type is ParameterType.ENUM and not self.enum_values:
            raise ValueError(f"enum parameter '{self.name}' declares no values")
        return self

    @property
    def enum_pairs(self) -> Dict[str, str]:
        return {v: self.label_for(v) for v in self.enum_values}

    def label_for(self, value: str) -> str:
        """Display label for an enum value; falls back to the value itself."""
        try:
            idx = self.enum_values.index(value)
        except ValueError:
            return value
        return self.enum_labels[idx] if idx < len(self.enum_labels) else value


class ValidationRules(_Descriptor):
    required_params: Tuple[str, ...] = Field(default=(), alias="requiredParams")
    requires_at_least_one_of: Tuple[str, ...] = Field(default=(), alias="requiresAtLeastOneOf")
    requires_one_of_groups: Tuple[Tuple[str, ...], ...] = Field(default=(), alias="requiresOneOfGroups")
    mutually_exclusive: Tuple[Tuple[str, ...], ...] = Field(default=(), alias="mutuallyExclusive")

    def at_least_one_groups(self) -> List[Tuple[str, ...]]:
        """Every group that needs ≥1 present member, the single legacy group first."""
        groups = [self.requires_at_least_one_of] if self.requires_at_least_one_of else []
        groups.extend(g for g in self.requires_one_of_groups if g)
        return groups


# ---------------------------------------------------------------------------
# Paging, caching, metadata
# ---------------------------------------------------------------------------

class PagingPolicy(_Descriptor):
    supported: bool = False
    param_name: str = Field(default="page", alias="paramName")
    default_page_size: Optional[int] = Field(default=None, alias="defaultPageSize")
    max_pages: int = Field(default=25, alias="maxPages", ge=1)


class CachingPolicy(_Descriptor):
    policy: CachePolicy = CachePolicy.NONE
    ttl: Optional[int] = Field(default=None, ge=0)
    description: str = ""

    @field_validator("policy", mode="before")
    @classmethod
    def _parse_policy(cls, v: Any) -> Any:
        return _lower(v)

    @property
    def effective_ttl_s(self) -> int:
        """Explicit ttl wins; otherwise the fixed per-policy lifetime. 0 = never cache."""
        if self.ttl is not None:
            return self.ttl
        return POLICY_TTL_S[self.policy]


class MetadataConfig(_Descriptor):
    api_tier: Optional[str] = Field(default=None, alias="apiTier")
    rate_limit: Optional[str] = Field(default=None, alias="rateLimit")
    quota_weight: int = Field(default=1, alias="quotaWeight", ge=1)


class ExampleConfig(_Descriptor):
    title: str = ""
    description: str = ""
    params: Dict[str, str] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _params_text(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): _as_text(val) for k, val in v.items()}
        return v


# ---------------------------------------------------------------------------
# Response shape and flatten rules
# ---------------------------------------------------------------------------

class NestedObjectRule(_Descriptor):
    path: str
    strategy: ObjectStrategy = ObjectStrategy.FLATTEN
    prefix: str = ""

    @field_validator("strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, v: Any) -> Any:
        v = _lower(v)
        # "stringify" is accepted as a synonym of json for objects
        return "json" if v == "stringify" else v


class NestedArrayRule(_Descriptor):
    path: str
    strategy: ArrayStrategy = ArrayStrategy.STRINGIFY
    prefix: str = ""

    @field_validator("strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, v: Any) -> Any:
        v = _lower(v)
        return "stringify" if v == "json" else v


class RenameRule(_Descriptor):
    source: str = Field(alias="from")
    target: str = Field(alias="to")


class FlattenSpec(_Descriptor):
    prefix: str = ""
    nested_objects: Tuple[NestedObjectRule, ...] = Field(default=(), alias="nestedObjects")
    nested_arrays: Tuple[NestedArrayRule, ...] = Field(default=(), alias="nestedArrays")
    rename_columns: Tuple[RenameRule, ...] = Field(default=(), alias="renameColumns")
    exclude_columns: Tuple[str, ...] = Field(default=(), alias="excludeColumns")

    @property
    def renames(self) -> Dict[str, str]:
        return {r.source: r.target for r in self.rename_columns}


class ResponseShape(_Descriptor):
    root_path: str = Field(default="response", alias="rootPath")
    type: ResponseType = ResponseType.ARRAY
    flatten: FlattenSpec = Field(default_factory=FlattenSpec)

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, v: Any) -> Any:
        return _lower(v)


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

class EndpointDescriptor(_Descriptor):
    """
    Declarative definition of one API endpoint.

    Built once at catalog load time from the descriptor source and never
    mutated afterwards; a catalog reload replaces whole instances.
    """

    id: str = Field(min_length=1)
    path: str = Field(min_length=1)
    category: str = Field(min_length=1)
    subcategory: Optional[str] = None
    description: str = ""
    keywords: Tuple[str, ...] = ()
    http_method: HttpMethod = Field(default=HttpMethod.GET, alias="method")

    params: Tuple[ParameterDescriptor, ...] = ()
    validation: ValidationRules = Field(default_factory=ValidationRules)
    paging: PagingPolicy = Field(default_factory=PagingPolicy)
    caching: CachingPolicy = Field(default_factory=CachingPolicy)
    response: ResponseShape = Field(default_factory=ResponseShape)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    examples: Tuple[ExampleConfig, ...] = ()

    @field_validator("id", "path", "category", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("http_method", mode="before")
    @classmethod
    def _parse_method(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords_text(cls, v: Any) -> Any:
        return [str(k) for k in v] if isinstance(v, (list, tuple)) else v

    @model_validator(mode="after")
    def _unique_param_names(self) -> "EndpointDescriptor":
        seen = set()
        for p in self.params:
            if p.name in seen:
                raise ValueError(f"duplicate parameter '{p.name}' in endpoint '{self.id}'")
            seen.add(p.name)
        return self

    @property
    def display_name(self) -> str:
        if self.subcategory:
            return f"{self.category} > {self.subcategory} > {self.id}"
        return f"{self.category} > {self.id}"

    def parameter(self, name: str) -> Optional[ParameterDescriptor]:
        for p in self.params:
            if p.name == name:
                return p
        return None
