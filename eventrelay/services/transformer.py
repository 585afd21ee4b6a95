"""
Transformation engine - turns a raw event payload into the outbound body.

Variants (rule.transform["type"]):
- passthrough: payload unchanged
- mapping:     ordered field mappings + static fields; missing source fields
               fall back to the mapping's default or are omitted, never raise
- script:      tenant code run in the sandbox; None means "skip delivery"
"""
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from eventrelay.schemas.rules import (
    FieldMapping,
    MappingTransform,
    PassthroughTransform,
    ScriptTransform,
)
from eventrelay.services.lookups import LookupMiss, LookupResolver
from eventrelay.services.sandbox import SandboxError, SandboxLimits, run_script
from eventrelay.utils.paths import MISSING, get_path, set_path
from eventrelay.utils.timezone import parse_timestamp

logger = logging.getLogger(__name__)

MAX_DEPTH = 50
_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}


class TransformError(Exception):
    """Transformation failed - classified TRANSFORM_ERROR, never retried."""


@dataclass
class TransformResult:
    body: Any = None
    skipped: bool = False
    scheduled: list[dict] = field(default_factory=list)
    duration_ms: int = 0


def _depth(value: Any, level: int = 1) -> int:
    if level > MAX_DEPTH:
        return level
    if isinstance(value, dict):
        return max((_depth(v, level + 1) for v in value.values()), default=level)
    if isinstance(value, list):
        return max((_depth(v, level + 1) for v in value), default=level)
    return level


def check_body(body: Any) -> Any:
    """Reject bodies that cannot be sent: too deep or not JSON serializable."""
    if _depth(body) > MAX_DEPTH:
        raise TransformError(f"Transformed payload exceeds maximum nesting depth of {MAX_DEPTH}")
    try:
        json.dumps(body)
    except (TypeError, ValueError) as e:
        raise TransformError(f"Transformed payload is not JSON serializable: {e}") from e
    return body


# ---------------------------------------------------------------------------
# Declarative mapping
# ---------------------------------------------------------------------------


class _CoercionFailed(Exception):
    pass


def _coerce_one(value: Any, mapping: FieldMapping, lookups: LookupResolver) -> Any:
    kind = mapping.coerce
    if kind is None or value is None:
        return value
    if kind == "trim":
        return value.strip() if isinstance(value, str) else value
    if kind == "upper":
        return value.upper() if isinstance(value, str) else value
    if kind == "lower":
        return value.lower() if isinstance(value, str) else value
    if kind == "string":
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
    if kind in ("number", "integer"):
        if isinstance(value, bool):
            raise _CoercionFailed(f"boolean is not a number: {value}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise _CoercionFailed(f"not a number: {value!r}")
        if kind == "integer" or number.is_integer():
            return int(number)
        return number
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise _CoercionFailed(f"not a boolean: {value!r}")
    if kind == "date":
        parsed = parse_timestamp(value)
        if parsed is None:
            raise _CoercionFailed(f"not a date: {value!r}")
        if mapping.date_format:
            return parsed.strftime(mapping.date_format)
        return parsed.isoformat().replace("+00:00", "Z")
    if kind == "lookup":
        return lookups.resolve(mapping.lookup_type, value)
    return value


def _coerce(value: Any, mapping: FieldMapping, lookups: LookupResolver, fan_out: bool) -> Any:
    if fan_out and isinstance(value, list):
        return [_coerce_one(v, mapping, lookups) for v in value]
    return _coerce_one(value, mapping, lookups)


def apply_mapping(config: MappingTransform, payload: dict, lookups: Optional[LookupResolver] = None) -> dict:
    """
    Build the outbound body from field mappings. Missing or uncoercible
    source values resolve to the mapping default, or the target is omitted.
    A lookup under the "fail" policy raises TransformError.
    """
    lookups = lookups or LookupResolver(policy=config.lookups)
    output: dict = copy.deepcopy(payload) if config.include_unmapped else {}

    for mapping in config.mappings:
        value = get_path(payload, mapping.source)
        if value is not MISSING and value is not None:
            try:
                value = _coerce(value, mapping, lookups, fan_out="[]" in mapping.source)
            except _CoercionFailed as e:
                logger.debug("Mapping %s -> %s coercion failed: %s", mapping.source, mapping.target, e)
                value = MISSING
            except LookupMiss as e:
                raise TransformError(str(e)) from e

        if value is MISSING or value is None:
            if mapping.has_default:
                set_path(output, mapping.target, copy.deepcopy(mapping.default))
            continue
        set_path(output, mapping.target, value)

    for path, static_value in config.static_fields.items():
        set_path(output, path, copy.deepcopy(static_value))

    return output


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def transform(
    config,
    payload: dict,
    context: dict,
    lookup_tables: Optional[dict] = None,
    limits: Optional[SandboxLimits] = None,
) -> TransformResult:
    """
    Transform one payload according to a parsed transform config.
    Raises TransformError for every failure; returns skipped=True for a
    script that returned None.
    """
    if isinstance(config, PassthroughTransform):
        return TransformResult(body=check_body(copy.deepcopy(payload)))

    if isinstance(config, MappingTransform):
        resolver = LookupResolver(lookup_tables, config.lookups)
        try:
            body = apply_mapping(config, payload, resolver)
        except ValueError as e:
            raise TransformError(f"Invalid mapping path: {e}") from e
        return TransformResult(body=check_body(body))

    if isinstance(config, ScriptTransform):
        if limits is None:
            limits = SandboxLimits.from_settings(config.timeout_seconds)
        try:
            result = await run_script(
                config.script,
                payload,
                context,
                lookup_tables=lookup_tables,
                lookup_policy=config.lookups.model_dump(),
                limits=limits,
            )
        except SandboxError as e:
            raise TransformError(f"Script {e.kind} error: {e}") from e

        if result.value is None:
            return TransformResult(skipped=True, scheduled=result.scheduled, duration_ms=result.duration_ms)
        return TransformResult(
            body=check_body(result.value),
            scheduled=result.scheduled,
            duration_ms=result.duration_ms,
        )

    raise TransformError(f"Unsupported transform config: {type(config).__name__}")
