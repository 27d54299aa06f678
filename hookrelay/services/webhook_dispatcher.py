"""Webhook dispatch service — delivers events to registered endpoints with retry and HMAC signing."""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.config import Settings, get_settings
from hookrelay.database import async_session
from hookrelay.models import new_uuid, utcnow
from hookrelay.models.webhook import (
    ConfigStatus,
    DeliveryStatus,
    WebhookConfig,
    WebhookDelivery,
    WebhookEvent,
)
from hookrelay.services.backoff import next_delay
from hookrelay.services.delivery_queue import DeliveryQueue
from hookrelay.services.event_catalog import TEST_EVENT_TYPE
from hookrelay.services.signing import sign_payload
from hookrelay.services.target_urls import TargetUrlError, validate_target_url
from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_TYPE_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
ATTEMPT_HEADER = "X-Webhook-Attempt"
CONTENT_TYPE = "application/json"

# Custom headers configured on an endpoint can never replace these
RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        "Content-Type",
        "Content-Length",
        "Host",
        "User-Agent",
        SIGNATURE_HEADER,
        EVENT_TYPE_HEADER,
        DELIVERY_ID_HEADER,
        TIMESTAMP_HEADER,
        ATTEMPT_HEADER,
    )
)

MAX_RESPONSE_BODY_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


def truncate_body(body: Optional[str], limit: int = MAX_RESPONSE_BODY_LENGTH) -> Optional[str]:
    """Cap a stored response body at ``limit`` characters."""
    if body is None:
        return None
    if len(body) <= limit:
        return body
    return body[:limit] + TRUNCATION_SUFFIX


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_envelope(event: WebhookEvent) -> bytes:
    """JSON body sent to endpoints: ``{id, type, data, timestamp}``."""
    envelope = {
        "id": event.id,
        "type": event.event_type,
        "data": event.data,
        "timestamp": _as_utc(event.created_at or utcnow()).isoformat(),
    }
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def build_headers(
    config: WebhookConfig,
    delivery: WebhookDelivery,
    event: WebhookEvent,
    signature: str,
    user_agent: str,
    attempt: int,
) -> dict[str, str]:
    headers = {
        str(name): str(value)
        for name, value in config.header_map.items()
        if str(name).lower() not in RESERVED_HEADERS
    }
    headers.update({
        "Content-Type": CONTENT_TYPE,
        "User-Agent": user_agent,
        SIGNATURE_HEADER: signature,
        EVENT_TYPE_HEADER: event.event_type,
        DELIVERY_ID_HEADER: delivery.id,
        TIMESTAMP_HEADER: str(int(time.time())),
        ATTEMPT_HEADER: str(attempt),
    })
    return headers


async def _read_limited(response: httpx.Response, max_chars: int) -> str:
    """Read at most enough of the body to know whether it exceeds ``max_chars``."""
    max_bytes = max_chars * 4 + 1
    chunks: list[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        chunks.append(chunk)
        size += len(chunk)
        if size >= max_bytes:
            break
    raw = b"".join(chunks)[:max_bytes]
    return raw.decode(response.charset_encoding or "utf-8", errors="replace")


class WebhookDispatcher:
    """Turns domain events into signed deliveries and drives each delivery's state machine.

    ``emit`` persists the event and one PENDING delivery per subscribed
    endpoint, then hands the attempts to an in-process worker pool so the
    caller never waits on the network. Failed attempts are rescheduled
    through ``next_attempt_at`` and picked up by the retry sweep.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session_factory = session_factory or async_session
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._queue = DeliveryQueue(
            self.deliver,
            concurrency=self._settings.dispatch_concurrency,
            maxsize=self._settings.dispatch_queue_size,
        )
        self._background: set[asyncio.Task] = set()

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory

    @property
    def settings(self) -> Settings:
        return self._settings

    # ── Lifecycle ────────────────────────────────────────
    def start(self) -> None:
        self._queue.start()

    async def drain(self) -> None:
        """Wait for background emits and queued attempts to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._queue.join()

    async def stop(self) -> None:
        await self._queue.stop()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=False)
        return self._client

    # ── Emission ─────────────────────────────────────────
    async def emit(
        self,
        company_id: str,
        event_type: str,
        payload: Any,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        """Record an event and queue delivery to every subscribed ACTIVE endpoint.

        Returns the event id once the event and its delivery rows are
        committed. Delivery outcomes never raise here; only persistence
        errors do.
        """
        async with self._session_factory() as db:
            store = WebhookStore(db)
            event = await store.add_event(
                company_id,
                event_type,
                payload,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
            )
            configs = await store.find_subscribed_configs(company_id, event_type)
            leases = await self._create_deliveries(store, event, configs)
            await db.commit()

        if not leases:
            logger.debug(f"No webhooks subscribed to {event_type} for company {company_id}")
        self._enqueue(leases)
        return event.id

    def emit_in_background(self, company_id: str, event_type: str, payload: Any, **options) -> asyncio.Task:
        """Fire-and-forget ``emit``; persistence failures are logged, not raised."""
        task = asyncio.create_task(self._emit_logged(company_id, event_type, payload, **options))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _emit_logged(self, company_id: str, event_type: str, payload: Any, **options) -> Optional[str]:
        try:
            return await self.emit(company_id, event_type, payload, **options)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to emit {event_type} for company {company_id}: {e}")
            return None

    async def send_to_config(
        self,
        config_id: str,
        company_id: str,
        event_type: str,
        payload: Any,
        *,
        metadata: Optional[dict] = None,
    ) -> str:
        """Record an event and queue delivery to one endpoint, whatever its subscriptions."""
        async with self._session_factory() as db:
            store = WebhookStore(db)
            config = await store.get_config(config_id, company_id)
            event = await store.add_event(company_id, event_type, payload, metadata=metadata)
            leases = await self._create_deliveries(store, event, [config])
            await db.commit()

        self._enqueue(leases)
        return event.id

    async def _create_deliveries(
        self,
        store: WebhookStore,
        event: WebhookEvent,
        configs: list[WebhookConfig],
    ) -> list[tuple[str, str]]:
        # Due immediately but leased to this process; if it dies before the
        # attempt, the lease expires and the retry sweep takes over.
        now = utcnow()
        lease_until = now + timedelta(seconds=self._settings.retry_lease_seconds)
        leases = []
        for config in configs:
            token = new_uuid()
            delivery = await store.add_delivery(
                event, config, next_attempt_at=now, leased_until=lease_until, lease_token=token
            )
            leases.append((delivery.id, token))
        return leases

    def _enqueue(self, leases: list[tuple[str, str]]) -> None:
        for delivery_id, token in leases:
            self._queue.submit(delivery_id, token)

    def _attempt_lease(self, config: WebhookConfig) -> timedelta:
        # Outlives the request deadline so no sweep can claim a row in flight
        return timedelta(seconds=self._settings.retry_lease_seconds, milliseconds=config.timeout_ms)

    # ── Delivery ─────────────────────────────────────────
    async def deliver(self, delivery_id: str, lease_token: Optional[str] = None) -> Optional[WebhookDelivery]:
        """Claim a delivery for one attempt, then attempt it.

        ``lease_token`` is the claim handed out by ``emit`` or the retry sweep.
        Without it (or once someone else has taken the row over) the attempt
        only proceeds if the row is due and unleased. Returns None when the
        row is gone or held elsewhere.
        """
        async with self._session_factory() as db:
            store = WebhookStore(db)
            bundle = await store.load_delivery_bundle(delivery_id)
            if bundle is None:
                logger.info(f"Delivery {delivery_id} no longer exists, skipping")
                return None
            delivery, config, event = bundle

            if delivery.is_terminal:
                return delivery

            token = new_uuid()
            now = utcnow()
            claimed = await store.acquire_attempt(
                delivery_id, now, now + self._attempt_lease(config), token, held_token=lease_token
            )
            await db.commit()
            if not claimed:
                logger.info(f"Delivery {delivery_id} is leased elsewhere or not due, skipping")
                return None
            await db.refresh(delivery)

            if config.status != ConfigStatus.ACTIVE.value and event.event_type != TEST_EVENT_TYPE:
                # Stays PENDING; resumes if the endpoint is reactivated
                await store.finish_attempt(delivery.id, token)
                await db.commit()
                await db.refresh(delivery)
                logger.info(f"Webhook {config.id} is {config.status}, holding delivery {delivery.id}")
                return delivery

            return await self.attempt_delivery(db, delivery, config, event, token)

    async def _post(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
        timeout: float,
        limit: int,
    ) -> tuple[int, str]:
        async with self._http().stream("POST", url, content=body, headers=headers, timeout=timeout) as response:
            return response.status_code, truncate_body(await _read_limited(response, limit), limit)

    async def attempt_delivery(
        self,
        db: AsyncSession,
        delivery: WebhookDelivery,
        config: WebhookConfig,
        event: WebhookEvent,
        lease_token: str,
    ) -> WebhookDelivery:
        """POST one attempt and persist the resulting state before returning.

        The caller must hold the row's lease as ``lease_token``. The outcome
        is written only while the row is still PENDING under that lease, and
        the dead-letter counter only moves when that write lands.
        """
        if delivery.is_terminal:
            return delivery

        store = WebhookStore(db)
        settings = self._settings

        try:
            validate_target_url(config.url, allow_private=settings.webhook_allow_private_targets)
        except TargetUrlError as e:
            saved = await store.finish_attempt(
                delivery.id,
                lease_token,
                status=DeliveryStatus.FAILED.value,
                error_message=f"Target rejected: {e}",
                next_attempt_at=None,
                completed_at=utcnow(),
            )
            await db.commit()
            await db.refresh(delivery)
            if saved:
                logger.warning(f"Webhook {config.id} target rejected for delivery {delivery.id}: {e}")
            return delivery

        request_body = delivery.request_body or build_envelope(event).decode("utf-8")
        body = request_body.encode("utf-8")
        signature = sign_payload(body, config.secret)
        attempt = (delivery.attempt or 0) + 1
        headers = build_headers(config, delivery, event, signature, settings.webhook_user_agent, attempt)

        response_status: Optional[int] = None
        response_body: Optional[str] = None
        error_message: Optional[str] = None
        timeout = config.timeout_ms / 1000

        start = time.monotonic()
        try:
            # httpx timeouts apply per phase and per chunk; this bounds the whole attempt
            response_status, response_body = await asyncio.wait_for(
                self._post(config.url, body, headers, timeout, settings.webhook_max_response_body_length),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            error_message = f"Request timed out after {config.timeout_ms}ms"
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
        finished = utcnow()

        outcome = {
            "attempt": attempt,
            "request_url": config.url,
            "request_body": request_body,
            "request_signature": signature,
            "duration_ms": int((time.monotonic() - start) * 1000),
            "last_attempt_at": finished,
            "response_status": response_status,
            "response_body": response_body,
        }
        succeeded = response_status is not None and 200 <= response_status < 300
        delay = None
        if succeeded:
            outcome.update(
                status=DeliveryStatus.SUCCESS.value,
                error_message=None,
                next_attempt_at=None,
                completed_at=finished,
            )
        else:
            error_message = error_message or f"HTTP {response_status}"
            delay = next_delay(attempt, config.max_retries, settings.retry_delays)
            if delay is not None:
                outcome.update(error_message=error_message, next_attempt_at=finished + delay)
            else:
                outcome.update(
                    status=DeliveryStatus.DEAD_LETTER.value,
                    error_message=error_message,
                    next_attempt_at=None,
                    completed_at=finished,
                )

        if not await store.finish_attempt(delivery.id, lease_token, **outcome):
            await db.commit()
            logger.warning(
                f"Delivery {delivery.id} lost its lease during attempt {attempt}; outcome discarded"
            )
            return delivery

        if succeeded:
            await store.reset_dead_letters(config.id)
            await db.commit()
            await db.refresh(delivery)
            await db.refresh(config)
            logger.info(
                f"Webhook delivered: {event.event_type} to {config.url} "
                f"(status {response_status}, attempt {attempt})"
            )
            return delivery

        if delay is not None:
            await db.commit()
            await db.refresh(delivery)
            logger.info(
                f"Webhook attempt {attempt} failed for {config.url} "
                f"({error_message}); retrying in {int(delay.total_seconds())}s"
            )
            return delivery

        count, status = await store.record_dead_letter(config.id, settings.webhook_suspension_threshold)
        await db.commit()
        await db.refresh(delivery)
        await db.refresh(config)
        logger.warning(
            f"Webhook dead-lettered: {event.event_type} to {config.url} after "
            f"{attempt} attempts ({error_message}); {count} consecutive"
        )
        if status == ConfigStatus.SUSPENDED.value and count == settings.webhook_suspension_threshold:
            logger.warning(f"Webhook {config.id} suspended after {count} consecutive dead letters")
        return delivery
