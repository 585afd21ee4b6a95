"""
Database models - import all models here so Alembic can discover them.
"""
from eventrelay.models.tenant import Tenant
from eventrelay.models.delivery_rule import DeliveryRule, DeliveryRuleVersion
from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.scheduled_delivery import ScheduledDelivery
from eventrelay.models.worker_checkpoint import WorkerCheckpoint
from eventrelay.models.lookup_entry import LookupEntry
from eventrelay.models.event_source import EventSourceConfig

__all__ = [
    "Tenant",
    "DeliveryRule",
    "DeliveryRuleVersion",
    "DeliveryAttemptLog",
    "ScheduledDelivery",
    "WorkerCheckpoint",
    "LookupEntry",
    "EventSourceConfig",
]
