"""
Rule matching and rule lifecycle tests.
"""
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from eventrelay.models.delivery_rule import DeliveryRule, DeliveryRuleVersion
from eventrelay.models.tenant import Tenant
from eventrelay.schemas.rules import BearerAuth, RuleDefinition, ScriptTransform
from eventrelay.services.rules import (
    RuleValidationError,
    create_rule,
    disable_rule,
    evaluate_condition,
    match_rules,
    update_rule,
    validate_definition,
)


def _definition(**overrides) -> RuleDefinition:
    values = {
        "tenant_id": "acme",
        "name": "Orders",
        "event_type": "order.created",
        "target_url": "https://hooks.example.com/orders",
    }
    values.update(overrides)
    return RuleDefinition(**values)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class TestMatchRules:
    async def test_matches_tenant_and_event_type(self, db, tenant, make_rule, make_event):
        rule = await make_rule()
        await make_rule(event_type="order.cancelled")
        await make_rule(tenant_id="globex")
        matched = await match_rules(db, make_event())
        assert [r.id for r in matched] == [rule.id]

    async def test_no_rules_is_empty(self, db, tenant, make_event):
        assert await match_rules(db, make_event()) == []

    async def test_inactive_rule_ignored(self, db, tenant, make_rule, make_event):
        await make_rule(is_active=False)
        assert await match_rules(db, make_event()) == []

    async def test_wildcard_event_type(self, db, tenant, make_rule, make_event):
        rule = await make_rule(event_type="*")
        matched = await match_rules(db, make_event(event_type="invoice.paid"))
        assert [r.id for r in matched] == [rule.id]

    async def test_global_rule_applies_to_every_tenant(self, db, make_rule, make_event):
        rule = await make_rule(tenant_id=None)
        matched = await match_rules(db, make_event(tenant_id="globex"))
        assert [r.id for r in matched] == [rule.id]

    async def test_tenant_override_replaces_global(self, db, tenant, make_rule, make_event):
        global_rule = await make_rule(tenant_id=None)
        override = await make_rule(overrides_rule_id=global_rule.id, target_url="https://acme.example.com/hook")

        matched = await match_rules(db, make_event())
        assert [r.id for r in matched] == [override.id]

        other = await match_rules(db, make_event(tenant_id="globex"))
        assert [r.id for r in other] == [global_rule.id]

    async def test_multiple_rules_all_match(self, db, tenant, make_rule, make_event):
        first = await make_rule(name="CRM")
        second = await make_rule(name="Warehouse")
        matched = await match_rules(db, make_event())
        assert {r.id for r in matched} == {first.id, second.id}

    async def test_inactive_tenant_matches_nothing(self, db, make_rule, make_event, session_factory):
        async with session_factory() as session:
            session.add(Tenant(id="acme", name="Acme", is_active=False))
            await session.commit()
        await make_rule()
        assert await match_rules(db, make_event()) == []

    async def test_condition_filters(self, db, tenant, make_rule, make_event):
        rule = await make_rule(condition='payload["amount"] > 100 and payload["status"] == "paid"')
        assert [r.id for r in await match_rules(db, make_event())] == [rule.id]
        assert await match_rules(db, make_event(event_id=2, amount=5, status="paid")) == []

    async def test_broken_condition_skips_rule(self, db, tenant, make_rule, make_event):
        await make_rule(condition='payload["missing"] == 1')
        assert await match_rules(db, make_event()) == []

    async def test_condition_runtime_error_is_no_match(self, db, tenant, make_rule, make_event):
        rule = await make_rule(condition='payload["total"] / payload["count"] > 1')
        assert await match_rules(db, make_event(event_id=1, total=5, count=0)) == []
        assert [r.id for r in await match_rules(db, make_event(event_id=2, total=5, count=1))] == [rule.id]


class TestEvaluateCondition:
    def test_functions_available(self, make_event):
        assert evaluate_condition('lower(payload["status"]) == "paid" and len(event_type) > 3', make_event())

    def test_tenant_name(self, make_event):
        assert evaluate_condition('tenant_id == "acme"', make_event())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestValidateDefinition:
    def test_valid(self):
        validate_definition(_definition(condition='payload["amount"] > 1'))

    def test_bad_condition(self):
        with pytest.raises(RuleValidationError, match="condition"):
            validate_definition(_definition(condition='payload["amount" >'))

    def test_bad_script(self):
        with pytest.raises(RuleValidationError, match="script"):
            validate_definition(_definition(transform=ScriptTransform(script="import os\nreturn payload")))

    def test_private_target(self):
        with pytest.raises(RuleValidationError):
            validate_definition(_definition(target_url="http://10.0.0.5/hook"))

    def test_signing_needs_secret(self):
        with pytest.raises(RuleValidationError, match="signing secret"):
            validate_definition(_definition(signing_enabled=True))


class TestRuleLifecycle:
    async def test_create_records_version_one(self, db):
        rule = await create_rule(db, _definition())
        await db.commit()
        versions = (await db.execute(select(DeliveryRuleVersion))).scalars().all()
        assert rule.version == 1
        assert [(v.rule_id, v.version) for v in versions] == [(rule.id, 1)]
        assert versions[0].snapshot["target_url"] == "https://hooks.example.com/orders"

    async def test_create_encrypts_secrets(self, db):
        from cryptography.fernet import Fernet

        cfg = MagicMock()
        cfg.encryption_key = Fernet.generate_key().decode()
        cfg.enforce_https = False
        cfg.block_private_networks = True
        with patch("eventrelay.config.get_settings", return_value=cfg):
            rule = await create_rule(db, _definition(auth=BearerAuth(token="tok")))
            assert rule.auth["token"].startswith("enc:")
            assert rule.auth_config().token != "tok"

    async def test_update_bumps_version(self, db):
        rule = await create_rule(db, _definition())
        await db.commit()

        updated = await update_rule(db, rule.id, {"target_url": "https://hooks.example.com/v2"}, "acme")
        await db.commit()

        assert updated.version == 2
        assert updated.target_url == "https://hooks.example.com/v2"
        versions = (await db.execute(
            select(DeliveryRuleVersion.version).where(DeliveryRuleVersion.rule_id == rule.id)
            .order_by(DeliveryRuleVersion.version)
        )).scalars().all()
        assert versions == [1, 2]

    async def test_update_other_tenant_not_found(self, db):
        rule = await create_rule(db, _definition())
        await db.commit()
        assert await update_rule(db, rule.id, {"name": "x"}, "globex") is None

    async def test_update_rejects_invalid_change(self, db):
        rule = await create_rule(db, _definition())
        await db.commit()
        with pytest.raises(RuleValidationError):
            await update_rule(db, rule.id, {"target_url": "http://127.0.0.1/x"}, "acme")

    async def test_disable_is_soft(self, db):
        rule = await create_rule(db, _definition())
        await db.commit()

        disabled = await disable_rule(db, rule.id, "acme")
        await db.commit()
        assert not disabled.is_active
        assert disabled.version == 2
        assert await db.get(DeliveryRule, rule.id) is not None

        again = await disable_rule(db, rule.id, "acme")
        assert again.version == 2
