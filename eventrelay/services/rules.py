"""
Delivery rules - matching events to rules, and the rule edit lifecycle.

Matching key is (tenant_id, event_type). Global default rules (tenant_id NULL)
apply to every tenant unless the tenant has an active rule overriding them.
An optional condition expression narrows a rule further, e.g.
    payload["status"] == "paid" and payload["amount"] > 100
"""
import ast
import logging
import uuid
from typing import Any, Optional

from simpleeval import EvalWithCompoundTypes
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.models.delivery_rule import DeliveryRule, DeliveryRuleVersion
from eventrelay.models.tenant import Tenant
from eventrelay.schemas.events import RawEvent
from eventrelay.schemas.rules import RuleDefinition, ScriptTransform
from eventrelay.services.sandbox import validate_script
from eventrelay.utils.encryption import encrypt_value
from eventrelay.utils.url_check import UrlNotAllowed, check_url

logger = logging.getLogger(__name__)

WILDCARD_EVENT_TYPE = "*"

CONDITION_FUNCTIONS = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "lower": lambda s: s.lower() if isinstance(s, str) else s,
    "upper": lambda s: s.upper() if isinstance(s, str) else s,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
}

# Auth fields stored encrypted at rest
_SECRET_FIELDS = {
    "api_key": ("api_key",),
    "basic": ("password",),
    "bearer": ("token",),
    "oauth1": ("consumer_secret", "token_secret"),
    "oauth2": ("client_secret",),
}


class RuleValidationError(ValueError):
    """Rule definition rejected before it is saved."""


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def evaluate_condition(expression: str, event: RawEvent) -> bool:
    """Evaluate a rule condition against an event. Raises on invalid expressions."""
    evaluator = EvalWithCompoundTypes(
        names={
            "payload": event.payload,
            "event_type": event.event_type,
            "tenant_id": event.tenant_id,
        },
        functions=CONDITION_FUNCTIONS,
    )
    return bool(evaluator.eval(expression))


def _condition_allows(rule: DeliveryRule, event: RawEvent) -> bool:
    if not rule.condition:
        return True
    try:
        return evaluate_condition(rule.condition, event)
    except Exception as e:
        # Any failure in a tenant expression counts as no match
        logger.warning(
            "Rule %s condition could not be evaluated, skipping rule: %s",
            str(rule.id)[:8], str(e),
            extra={"rule_id": str(rule.id), "tenant_id": event.tenant_id},
        )
        return False


async def match_rules(db: AsyncSession, event: RawEvent) -> list[DeliveryRule]:
    """
    All active rules that should fire for this event. Each returned rule gets
    its own attempt log. An empty list is a normal outcome.
    """
    tenant = await db.get(Tenant, event.tenant_id)
    if tenant is not None and not tenant.is_active:
        return []

    result = await db.execute(
        select(DeliveryRule)
        .where(
            DeliveryRule.is_active.is_(True),
            or_(DeliveryRule.tenant_id == event.tenant_id, DeliveryRule.tenant_id.is_(None)),
            or_(
                DeliveryRule.event_type == event.event_type,
                DeliveryRule.event_type == WILDCARD_EVENT_TYPE,
            ),
        )
        .order_by(DeliveryRule.created_at)
    )
    candidates = list(result.scalars().all())
    if not candidates:
        return []

    overridden = set(
        (await db.execute(
            select(DeliveryRule.overrides_rule_id).where(
                DeliveryRule.tenant_id == event.tenant_id,
                DeliveryRule.is_active.is_(True),
                DeliveryRule.overrides_rule_id.is_not(None),
            )
        )).scalars().all()
    )

    matched = []
    for rule in candidates:
        if rule.tenant_id is None and rule.id in overridden:
            continue
        if _condition_allows(rule, event):
            matched.append(rule)
    return matched


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def validate_definition(definition: RuleDefinition) -> None:
    if definition.condition:
        try:
            ast.parse(definition.condition, mode="eval")
        except SyntaxError as e:
            raise RuleValidationError(f"Invalid condition: {e.msg}") from e
    if isinstance(definition.transform, ScriptTransform):
        errors = validate_script(definition.transform.script)
        if errors:
            raise RuleValidationError("Invalid script: " + "; ".join(errors))
    try:
        check_url(definition.target_url)
    except UrlNotAllowed as e:
        raise RuleValidationError(str(e)) from e
    if definition.signing_enabled and not definition.signing_secrets:
        raise RuleValidationError("Signing is enabled but no signing secret is configured")


def _encrypt_auth(auth: dict) -> dict:
    stored = dict(auth)
    for field_name in _SECRET_FIELDS.get(stored.get("type"), ()):
        if stored.get(field_name):
            stored[field_name] = encrypt_value(stored[field_name])
    if stored.get("type") == "custom_headers":
        stored["headers"] = {k: encrypt_value(v) for k, v in stored.get("headers", {}).items()}
    return stored


def _apply_definition(rule: DeliveryRule, definition: RuleDefinition) -> None:
    rule.tenant_id = definition.tenant_id
    rule.overrides_rule_id = (
        uuid.UUID(definition.overrides_rule_id) if definition.overrides_rule_id else None
    )
    rule.name = definition.name
    rule.event_type = definition.event_type
    rule.condition = definition.condition
    rule.target_url = definition.target_url
    rule.http_method = definition.http_method
    rule.content_type = definition.content_type
    rule.timeout_ms = definition.timeout_ms
    rule.auth = _encrypt_auth(definition.auth.model_dump(mode="json"))
    rule.transform = definition.transform.model_dump(mode="json")
    rule.delivery_mode = definition.delivery_mode.model_dump(mode="json")
    rule.retry_policy = definition.retry_policy.model_dump(mode="json")
    rule.rate_limit = definition.rate_limit.model_dump(mode="json") if definition.rate_limit else None
    rule.signing_enabled = definition.signing_enabled
    rule.signing_secrets = list(definition.signing_secrets)
    rule.is_active = definition.is_active


async def _record_version(db: AsyncSession, rule: DeliveryRule) -> None:
    db.add(DeliveryRuleVersion(rule_id=rule.id, version=rule.version, snapshot=rule.snapshot()))
    await db.flush()


async def create_rule(db: AsyncSession, definition: RuleDefinition) -> DeliveryRule:
    validate_definition(definition)
    rule = DeliveryRule(id=uuid.uuid4(), version=1)
    _apply_definition(rule, definition)
    db.add(rule)
    await db.flush()
    await _record_version(db, rule)
    logger.info(
        "Created rule %s (%s) for tenant=%s event_type=%s",
        str(rule.id)[:8], rule.name, rule.tenant_id or "*", rule.event_type,
    )
    return rule


async def get_rule(db: AsyncSession, rule_id, tenant_id: Optional[str]) -> Optional[DeliveryRule]:
    rule = await db.get(DeliveryRule, rule_id)
    if rule is None or rule.tenant_id != tenant_id:
        return None
    return rule


async def update_rule(
    db: AsyncSession,
    rule_id,
    changes: dict[str, Any],
    tenant_id: Optional[str],
) -> Optional[DeliveryRule]:
    """Apply a partial edit, bump the version and snapshot it."""
    rule = await get_rule(db, rule_id, tenant_id)
    if rule is None:
        return None

    merged = rule.snapshot()
    merged.update(changes)
    merged["tenant_id"] = rule.tenant_id
    # Unchanged auth is re-saved as stored; encrypt_value skips "enc:" values
    definition = RuleDefinition.model_validate(merged)
    validate_definition(definition)
    _apply_definition(rule, definition)

    rule.version += 1
    await db.flush()
    await _record_version(db, rule)
    logger.info("Updated rule %s to version %d", str(rule.id)[:8], rule.version)
    return rule


async def disable_rule(db: AsyncSession, rule_id, tenant_id: Optional[str]) -> Optional[DeliveryRule]:
    """Soft delete - attempt logs and schedules keep their reference."""
    rule = await get_rule(db, rule_id, tenant_id)
    if rule is None:
        return None
    if rule.is_active:
        rule.is_active = False
        rule.version += 1
        await db.flush()
        await _record_version(db, rule)
        logger.info("Disabled rule %s", str(rule.id)[:8])
    return rule
