"""
Delivery engine - runs one attempt of one attempt log end to end:

    claim (CAS) -> transform -> URL policy -> rate limit gate
        -> auth + signing -> HTTP call -> classify -> state transition

Every path ends in a log update; nothing raised inside an attempt reaches the
worker loops. Deliveries run concurrently up to `delivery_concurrency`.
"""
import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy import update

from eventrelay.config import get_settings
from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.models.delivery_rule import DeliveryRule
from eventrelay.models.tenant import Tenant
from eventrelay.schemas.delivery import DeliveryOutcome, DeliveryStatus, ErrorCategory
from eventrelay.schemas.rules import MappingTransform, OAuth2Auth, ScriptTransform
from eventrelay.services.circuit_breaker import check_circuit, record_failure, record_success, trips_circuit
from eventrelay.services.auth import AuthError, build_auth, clear_cached_token, redact_headers
from eventrelay.services.lookups import load_lookup_tables
from eventrelay.services.retry import classify, next_transition, parse_retry_after
from eventrelay.services.scheduler import schedule_from_script
from eventrelay.services.transformer import TransformError, transform
from eventrelay.utils.logging import (
    bind_log_context,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from eventrelay.utils.rate_limiter import RateLimitScope, check_rate_limits
from eventrelay.utils.signing import sign_headers
from eventrelay.utils.timezone import utcnow
from eventrelay.utils.url_check import UrlNotAllowed, check_url

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_UNSET = object()


@dataclass
class OutboundRequest:
    method: str
    url: str
    content: bytes
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    redacted_headers: dict[str, str] = field(default_factory=dict)


def serialize_body(body: Any, content_type: str) -> tuple[bytes, Optional[dict]]:
    """Encode the body per content type. Returns (bytes, form params or None)."""
    if content_type == FORM_CONTENT_TYPE:
        if not isinstance(body, dict):
            raise TransformError("Form-encoded delivery requires an object payload")
        form = {
            k: v if isinstance(v, str) else json.dumps(v) if isinstance(v, (dict, list)) else str(v)
            for k, v in body.items()
            if v is not None
        }
        return urlencode(form).encode(), form
    if isinstance(body, str):
        return body.encode(), None
    return json.dumps(body, separators=(",", ":")).encode(), None


class DeliveryEngine:
    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        worker_id: Optional[str] = None,
        rate_limiter: Optional[Callable] = None,
        concurrency: Optional[int] = None,
    ):
        settings = get_settings()
        if session_factory is None:
            from eventrelay.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            follow_redirects=False,
            limits=httpx.Limits(max_connections=settings.delivery_concurrency * 2),
        )
        self.worker_id = worker_id or f"{settings.worker_id}:{os.getpid()}"
        self._rate_limiter = rate_limiter or check_rate_limits
        self._concurrency = concurrency or settings.delivery_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    def spawn(self, log_id) -> asyncio.Task:
        """Start an attempt in its own task (own correlation id context)."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._concurrency)
        task = asyncio.create_task(self._bounded_attempt(log_id))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _bounded_attempt(self, log_id) -> Optional[str]:
        async with self._semaphore:
            return await self.attempt(log_id)

    async def attempt_many(self, log_ids) -> list:
        """
        Run attempts concurrently and wait for them. Cancelling the caller
        does not cancel the deliveries; drain() waits for those on shutdown.
        """
        tasks = [self.spawn(log_id) for log_id in log_ids]
        if not tasks:
            return []
        return await asyncio.shield(asyncio.gather(*tasks, return_exceptions=True))

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def drain(self, timeout: float) -> None:
        """Let in-flight attempts finish, cancelling whatever outlives timeout."""
        if not self._inflight:
            return
        logger.info("Waiting for %d in-flight deliveries", len(self._inflight))
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d deliveries at shutdown; claims will be reaped", len(pending))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def attempt(self, log_id) -> Optional[str]:
        """
        Claim and process one attempt log. Returns the resulting status, or
        None if the log was not due or another worker claimed it.
        """
        set_correlation_id(generate_correlation_id())
        claimed = await self._claim(log_id)
        if claimed is None:
            return None
        log, rule, tenant = claimed
        bind_log_context(log_id=str(log.id), tenant_id=log.tenant_id, rule_id=str(log.rule_id))

        try:
            return await self._run(log, rule, tenant)
        except Exception as e:
            logger.error(
                "Unexpected error delivering log %s: %s", str(log.id)[:8], str(e),
                exc_info=True, extra={"log_id": str(log.id), "tenant_id": log.tenant_id},
            )
            transition = next_transition(log.attempt_count + 1, log.max_retries, ErrorCategory.NETWORK)
            return await self._finish(
                log,
                transition.status,
                attempt_count=log.attempt_count + 1,
                category=ErrorCategory.NETWORK,
                message=f"Internal error: {type(e).__name__}: {e}",
                next_retry_at=transition.next_retry_at,
            )

    async def _claim(self, log_id):
        now = utcnow()
        async with self._session_factory() as db:
            log = await db.get(DeliveryAttemptLog, log_id)
            if log is None or log.status not in DeliveryStatus.DUE:
                return None
            if log.attempt_count >= log.max_retries:
                return None

            result = await db.execute(
                update(DeliveryAttemptLog)
                .where(
                    DeliveryAttemptLog.id == log.id,
                    DeliveryAttemptLog.status == log.status,
                    DeliveryAttemptLog.attempt_count == log.attempt_count,
                    DeliveryAttemptLog.attempt_count < DeliveryAttemptLog.max_retries,
                    (DeliveryAttemptLog.next_retry_at.is_(None)) | (DeliveryAttemptLog.next_retry_at <= now),
                )
                .values(
                    status=DeliveryStatus.IN_PROGRESS,
                    claimed_by=self.worker_id,
                    claimed_at=now,
                    correlation_id=get_correlation_id(),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount != 1:
                logger.debug("Log %s already claimed or not due", str(log_id)[:8])
                return None

            rule = await db.get(DeliveryRule, log.rule_id)
            tenant = await db.get(Tenant, log.tenant_id)
        return log, rule, tenant

    async def _run(self, log: DeliveryAttemptLog, rule: Optional[DeliveryRule], tenant: Optional[Tenant]):
        attempt_no = log.attempt_count + 1

        if rule is None or not rule.is_active or (tenant is not None and not tenant.is_active):
            return await self._finish(
                log, DeliveryStatus.ABANDONED,
                attempt_count=log.attempt_count,
                message="Rule or tenant is inactive",
            )

        body = log.transformed_payload
        if body is None:
            try:
                result = await self._transform(log, rule, attempt_no)
            except TransformError as e:
                return await self._finish(
                    log, DeliveryStatus.FAILED,
                    attempt_count=attempt_no,
                    category=ErrorCategory.TRANSFORM_ERROR,
                    message=str(e),
                )
            if result.scheduled:
                await schedule_from_script(self._session_factory, log, result.scheduled, result.body)
            if result.skipped:
                return await self._finish(
                    log, DeliveryStatus.SKIPPED,
                    attempt_count=attempt_no,
                    message="Transform returned no payload; delivery skipped",
                )
            body = result.body

        try:
            check_url(rule.target_url)
        except UrlNotAllowed as e:
            return await self._finish(
                log, DeliveryStatus.FAILED,
                attempt_count=attempt_no,
                category=ErrorCategory.VALIDATION,
                message=str(e),
                transformed=body,
            )

        circuit = await check_circuit(self._session_factory, rule)
        if not circuit.allowed:
            return await self._finish(
                log, DeliveryStatus.RETRYING,
                attempt_count=log.attempt_count,
                category=ErrorCategory.SERVER_ERROR,
                message=circuit.reason,
                next_retry_at=circuit.retry_at,
                transformed=body,
            )

        decision = await self._rate_limiter(self._rate_limit_scopes(rule, tenant, log.tenant_id))
        if not decision.allowed:
            # Limiter denials defer the attempt without spending retry budget
            retry_after = decision.retry_after or 1
            return await self._finish(
                log, DeliveryStatus.RETRYING,
                attempt_count=log.attempt_count,
                category=ErrorCategory.RATE_LIMIT,
                message=f"Rate limited by {decision.scope} limit",
                next_retry_at=utcnow() + timedelta(seconds=retry_after),
                transformed=body,
            )

        validation_policy = rule.retry_config().validation
        try:
            request = await self.build_request(rule, body, message_id=str(log.id))
        except TransformError as e:
            return await self._finish(
                log, DeliveryStatus.FAILED,
                attempt_count=attempt_no,
                category=ErrorCategory.TRANSFORM_ERROR,
                message=str(e),
                transformed=body,
            )
        except AuthError as e:
            category = ErrorCategory.SERVER_ERROR if e.retryable else ErrorCategory.AUTH
            transition = next_transition(attempt_no, log.max_retries, category, validation_policy)
            return await self._finish(
                log, transition.status,
                attempt_count=attempt_no,
                category=category,
                message=str(e),
                next_retry_at=transition.next_retry_at,
                transformed=body,
            )

        outcome = await self.send(request, rule.timeout_ms / 1000)
        category = classify(outcome)
        if category == ErrorCategory.AUTH and isinstance(rule.auth_config(), OAuth2Auth):
            await clear_cached_token(rule.id)

        transition = next_transition(
            attempt_no, log.max_retries, category, validation_policy, outcome.retry_after,
        )
        status = await self._finish(
            log, transition.status,
            attempt_count=attempt_no,
            category=category,
            outcome=outcome,
            next_retry_at=transition.next_retry_at,
            transformed=body,
            headers=request.redacted_headers,
        )
        await self._record_circuit(rule, category, outcome)
        return status

    async def _record_circuit(self, rule: DeliveryRule, category: Optional[str], outcome: DeliveryOutcome) -> None:
        try:
            if category is None:
                await record_success(self._session_factory, rule.id)
            elif trips_circuit(category, outcome):
                await record_failure(self._session_factory, rule)
        except Exception as e:
            logger.warning(
                "Circuit state update failed for rule %s: %s", str(rule.id)[:8], str(e),
                extra={"rule_id": str(rule.id)},
            )

    async def _transform(self, log: DeliveryAttemptLog, rule: DeliveryRule, attempt_no: int):
        config = rule.transform_config()
        tables = None
        if isinstance(config, (MappingTransform, ScriptTransform)):
            async with self._session_factory() as db:
                tables = await load_lookup_tables(db, log.tenant_id)
        context = {
            "tenant_id": log.tenant_id,
            "event_type": log.event_type,
            "event_id": log.event_id,
            "rule_id": str(rule.id),
            "rule_name": rule.name,
            "log_id": str(log.id),
            "attempt": attempt_no,
            "trigger": log.trigger,
        }
        return await transform(config, log.original_payload or {}, context, lookup_tables=tables)

    def _rate_limit_scopes(self, rule: DeliveryRule, tenant: Optional[Tenant], tenant_id: str):
        settings = get_settings()
        scopes = []
        rule_limit = rule.rate_limit_config()
        if rule_limit is not None:
            scopes.append(RateLimitScope("rule", str(rule.id), rule_limit.max_requests, rule_limit.window_ms))
        tenant_max = settings.tenant_rate_limit_max_requests
        tenant_window = settings.tenant_rate_limit_window_ms
        if tenant is not None and tenant.rate_limit_max_requests:
            tenant_max = tenant.rate_limit_max_requests
            tenant_window = tenant.rate_limit_window_ms or tenant_window
        scopes.append(RateLimitScope("tenant", tenant_id, tenant_max, tenant_window))
        scopes.append(RateLimitScope(
            "global", "all", settings.global_rate_limit_max_requests, settings.global_rate_limit_window_ms,
        ))
        return scopes

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------

    async def build_request(self, rule: DeliveryRule, body: Any, message_id: str) -> OutboundRequest:
        """Serialized, authenticated and (optionally) signed request for a body."""
        settings = get_settings()
        auth = rule.auth_config()
        content, form = serialize_body(body, rule.content_type)

        headers = {
            "Content-Type": rule.content_type,
            "User-Agent": settings.delivery_user_agent,
        }
        cid = get_correlation_id()
        if cid:
            headers["X-Correlation-ID"] = cid

        auth_headers, params = await build_auth(
            rule.id, auth, rule.http_method, rule.target_url, self._client, form,
        )
        headers.update(auth_headers)
        if rule.signing_enabled:
            headers.update(sign_headers(list(rule.signing_secrets or []), message_id, content))

        return OutboundRequest(
            method=rule.http_method,
            url=rule.target_url,
            content=content,
            headers=headers,
            params=params,
            redacted_headers=redact_headers(headers, auth),
        )

    async def send(self, request: OutboundRequest, timeout_seconds: float) -> DeliveryOutcome:
        settings = get_settings()
        started = time.monotonic()
        try:
            response = await self._client.request(
                request.method,
                request.url,
                content=request.content,
                headers=request.headers,
                params=request.params or None,
                timeout=timeout_seconds,
            )
        except httpx.TimeoutException as e:
            return DeliveryOutcome(
                latency_ms=_elapsed_ms(started),
                error=f"Timed out after {timeout_seconds:g}s ({type(e).__name__})",
                timed_out=True,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return DeliveryOutcome(latency_ms=_elapsed_ms(started), error=f"{type(e).__name__}: {e}")

        ok = 200 <= response.status_code < 300
        return DeliveryOutcome(
            http_status=response.status_code,
            latency_ms=_elapsed_ms(started),
            response_snippet=response.text[: settings.response_snippet_chars] or None,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            error=None if ok else f"HTTP {response.status_code}",
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _finish(
        self,
        log: DeliveryAttemptLog,
        status: str,
        *,
        attempt_count: int,
        category: Optional[str] = None,
        outcome: Optional[DeliveryOutcome] = None,
        message: Optional[str] = None,
        next_retry_at=None,
        transformed=_UNSET,
        headers: Optional[dict] = None,
    ) -> str:
        """Write the attempt result, only if this worker still holds the claim."""
        now = utcnow()
        values: dict[str, Any] = {
            "status": status,
            "attempt_count": attempt_count,
            "error_category": category,
            "last_error_message": message or (outcome.error if outcome else None),
            "next_retry_at": next_retry_at,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
        }
        if outcome is not None:
            values["last_http_status"] = outcome.http_status
            values["response_snippet"] = outcome.response_snippet
            values["latency_ms"] = outcome.latency_ms
        if transformed is not _UNSET:
            values["transformed_payload"] = transformed
        if headers is not None:
            values["request_headers"] = headers
        if status in DeliveryStatus.TERMINAL:
            values["completed_at"] = now
            values["next_retry_at"] = None

        async with self._session_factory() as db:
            result = await db.execute(
                update(DeliveryAttemptLog)
                .where(
                    DeliveryAttemptLog.id == log.id,
                    DeliveryAttemptLog.status == DeliveryStatus.IN_PROGRESS,
                    DeliveryAttemptLog.claimed_by == self.worker_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        extra = {
            "log_id": str(log.id),
            "rule_id": str(log.rule_id),
            "tenant_id": log.tenant_id,
            "category": category,
            "http_status": outcome.http_status if outcome else None,
            "attempt": attempt_count,
        }
        if result.rowcount != 1:
            logger.warning("Lost claim on log %s before recording %s", str(log.id)[:8], status, extra=extra)
            return status

        if status in (DeliveryStatus.SUCCESS, DeliveryStatus.SKIPPED):
            logger.info("Delivery %s %s (attempt %d)", str(log.id)[:8], status, attempt_count, extra=extra)
        elif status == DeliveryStatus.RETRYING:
            logger.warning(
                "Delivery %s failed (%s), retry %d/%d at %s",
                str(log.id)[:8], category, attempt_count, log.max_retries,
                next_retry_at.isoformat() if next_retry_at else "now", extra=extra,
            )
        else:
            logger.error(
                "Delivery %s %s (%s): %s",
                str(log.id)[:8], status, category, (values["last_error_message"] or "")[:200], extra=extra,
            )
        return status


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
