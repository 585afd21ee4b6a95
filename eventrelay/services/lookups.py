"""
Tenant code-mapping tables for lookup() - e.g. internal status codes to a
partner's codes. Tables are loaded once per transformation and passed into
the sandbox as plain dicts.
"""
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.models.lookup_entry import LookupEntry
from eventrelay.schemas.rules import LookupPolicy

logger = logging.getLogger(__name__)


class LookupMiss(LookupError):
    """Unmapped code under the "fail" policy."""


async def load_lookup_tables(db: AsyncSession, tenant_id: str) -> dict[str, dict[str, str]]:
    """All of a tenant's lookup tables as {lookup_type: {source: target}}."""
    result = await db.execute(
        select(LookupEntry.lookup_type, LookupEntry.source_code, LookupEntry.target_code)
        .where(LookupEntry.tenant_id == tenant_id)
    )
    tables: dict[str, dict[str, str]] = {}
    for lookup_type, source_code, target_code in result.all():
        tables.setdefault(lookup_type, {})[source_code] = target_code
    return tables


class LookupResolver:
    """Resolves codes against preloaded tables under one unmapped-code policy."""

    def __init__(self, tables: Optional[dict] = None, policy: Optional[LookupPolicy] = None):
        self.tables = tables or {}
        self.policy = policy or LookupPolicy()

    def resolve(self, lookup_type: str, code: Any) -> Any:
        if isinstance(code, list):
            return [self.resolve(lookup_type, item) for item in code]
        if code is None:
            return None

        table = self.tables.get(lookup_type, {})
        key = str(code)
        if key in table:
            return table[key]

        if self.policy.unmapped == "fail":
            raise LookupMiss(f"No mapping for {key!r} in lookup {lookup_type!r}")
        if self.policy.unmapped == "default":
            return self.policy.default_value
        return code

    __call__ = resolve
