from __future__ import annotations
import logging
import re
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sportsfeed.descriptors.models import EndpointDescriptor, ParameterDescriptor, ParameterType
from sportsfeed.errors import ParameterValidationError

logger = logging.getLogger(__name__)

_BOOLEANS = {"true", "false"}


def validate(
    descriptor: EndpointDescriptor, supplied: Optional[Mapping[str, Any]]
) -> Dict[str, str]:
    """
    Resolve and check call-time parameters against an endpoint descriptor.

    Order: defaults → required → at-least-one groups → mutually exclusive
    groups → per-parameter type/constraint checks (declaration order).
    The first violation is raised; nothing is aggregated.

    Returns:
        The resolved parameter map (string values, blanks dropped), ready
        to be canonicalised into a cache key and sent as a query string.

    Raises:
        ParameterValidationError: naming the endpoint and offending parameter.
    """
    resolved = _normalize(supplied)

    # 1. Defaults for anything absent
    for p in descriptor.params:
        if p.name not in resolved and p.default is not None and p.default.strip():
            resolved[p.name] = p.default.strip()

    # 2. Required parameters
    required = list(descriptor.validation.required_params)
    required.extend(p.name for p in descriptor.params if p.required and p.name not in required)
    for name in required:
        if name not in resolved:
            raise ParameterValidationError(
                f"missing required parameter '{name}'",
                param=name, endpoint_id=descriptor.id,
            )

    # 3. At-least-one groups
    for group in descriptor.validation.at_least_one_groups():
        if not any(name in resolved for name in group):
            raise ParameterValidationError(
                f"at least one of {', '.join(group)} is required",
                param=group[0], endpoint_id=descriptor.id,
            )

    # 4. Mutually exclusive groups
    for group in descriptor.validation.mutually_exclusive:
        present = [name for name in group if name in resolved]
        if len(present) > 1:
            raise ParameterValidationError(
                f"parameters {', '.join(present)} cannot be combined",
                param=present[1], endpoint_id=descriptor.id,
            )

    # 5. Type coercion and declared constraints
    for p in descriptor.params:
        if p.name in resolved:
            resolved[p.name] = _check(descriptor.id, p, resolved[p.name])

    logger.debug("Resolved params for %s: %s", descriptor.id, resolved)
    return resolved


def _normalize(supplied: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Stringify values; None and blank strings count as absent."""
    out: Dict[str, str] = {}
    for name, value in (supplied or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value).strip()
        if text:
            out[str(name)] = text
    return out


def _check(endpoint_id: str, p: ParameterDescriptor, value: str) -> str:
    def fail(reason: str) -> ParameterValidationError:
        return ParameterValidationError(
            f"parameter '{p.name}' {reason} (got '{value}')",
            param=p.name, endpoint_id=endpoint_id,
        )

    if p.type is ParameterType.INTEGER:
        try:
            number = int(value)
        except ValueError:
            raise fail("must be an integer") from None
        if p.min is not None and number < p.min:
            raise fail(f"must be >= {p.min}")
        if p.max is not None and number > p.max:
            raise fail(f"must be <= {p.max}")
        return str(number)

    if p.type is ParameterType.BOOLEAN:
        lowered = value.lower()
        if lowered not in _BOOLEANS:
            raise fail("must be true or false")
        return lowered

    if p.type is ParameterType.DATE:
        try:
            datetime.strptime(value, p.format)
        except ValueError:
            raise fail(f"must be a date formatted as {p.format}") from None
        return value

    if p.type is ParameterType.ENUM:
        if value not in p.enum_values:
            raise fail(f"must be one of {', '.join(p.enum_values)}")
        return value

    # string
    if p.min_length is not None and len(value) < p.min_length:
        raise fail(f"must be at least {p.min_length} characters")
    if p.max_length is not None and len(value) > p.max_length:
        raise fail(f"must be at most {p.max_length} characters")
    if p.pattern is not None and re.fullmatch(p.pattern, value) is None:
        raise fail(f"must match {p.pattern}")
    return value
