from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import hashlib
import hmac
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

import stripe
from sqlalchemy.exc import IntegrityError

from planguard.core.config import get_settings
from planguard.core.errors import ConfigurationError, SignatureInvalidError, UnknownTierError, ValidationError
from planguard.domain.plans import PlanTier, parse_tier
from planguard.domain.state import SubscriptionStatus, map_external_status
from planguard.persistence.repos.subscriptions import SubscriptionRepository


logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAID = "invoice.paid"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_DROPPED = "dropped"
OUTCOME_NO_MATCH = "no_match"


@dataclass(frozen=True)
class ProviderEvent:
    # Verified provider event; ``data`` is the event's ``data.object`` payload.
    id: str
    type: str
    data: dict[str, Any]
    created: int | None = None


@dataclass(frozen=True)
class ProcessResult:
    event_id: str
    event_type: str
    outcome: str
    action: str | None = None
    tenant_id: str | None = None
    subscription_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def build_billing_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signature for billing webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance_s: int,
) -> None:
    header = (signature_header or "").strip()
    if not header:
        raise SignatureInvalidError("Missing signature")
    if "v1=" not in header:
        expected = build_billing_signature(secret, payload)
        if not hmac.compare_digest(header, expected):
            raise SignatureInvalidError("Invalid signature")
        return

    # Provider "t=..,v1=.." headers are checked by the provider SDK, tolerance included.
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            header,
            secret,
            tolerance=tolerance_s or None,
        )
    except UnicodeDecodeError:
        raise SignatureInvalidError("Invalid signature") from None
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalidError("Invalid signature") from exc


def parse_event(payload: bytes) -> ProviderEvent:
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Webhook payload is not valid JSON", code="INVALID_PAYLOAD") from exc
    if not isinstance(raw, dict):
        raise ValidationError("Webhook payload must be a JSON object", code="INVALID_PAYLOAD")
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise ValidationError("Webhook payload is missing id or type", code="INVALID_PAYLOAD")
    data = raw.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    created = raw.get("created")
    return ProviderEvent(
        id=event_id,
        type=event_type,
        data=obj if isinstance(obj, dict) else {},
        created=created if isinstance(created, int) else None,
    )


def _ref(value: Any) -> str | None:
    # Provider references arrive as ids or as expanded objects.
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def invoice_subscription_id(obj: dict[str, Any]) -> str | None:
    metadata_ref = _ref(_metadata(obj).get("subscription_id"))
    if metadata_ref:
        return metadata_ref
    direct = _ref(obj.get("subscription"))
    if direct:
        return direct
    parent = obj.get("parent")
    if isinstance(parent, dict):
        details = parent.get("subscription_details")
        if isinstance(details, dict):
            return _ref(details.get("subscription"))
    return None


def lock_key(event: ProviderEvent) -> str:
    # Serialize on the provider subscription so row mutations never interleave.
    obj = event.data
    if event.type == EVENT_CHECKOUT_COMPLETED:
        key = _ref(obj.get("subscription"))
    elif event.type.startswith("customer.subscription."):
        key = _ref(obj.get("id"))
    elif event.type.startswith("invoice."):
        key = invoice_subscription_id(obj)
    else:
        key = None
    return f"sub:{key}" if key else f"evt:{event.id}"


class _KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop idle locks so the registry does not grow with every subscription seen.
            self._holders[key] -= 1
            if self._holders[key] == 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)


Handler = Callable[[ProviderEvent, SubscriptionRepository], Awaitable[ProcessResult]]


class BillingEventProcessor:
    def __init__(
        self,
        *,
        secret: str | None = None,
        tolerance_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._secret = secret if secret is not None else settings.billing_webhook_secret
        self._tolerance_s = tolerance_s if tolerance_s is not None else settings.billing_signature_tolerance_s
        self._locks = _KeyedLocks()
        self._handlers: dict[str, Handler] = {
            EVENT_CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EVENT_SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            EVENT_SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            EVENT_SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EVENT_INVOICE_PAID: self._handle_invoice_paid,
            EVENT_INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
        }

    def verify(self, raw_payload: bytes, signature_header: str | None) -> ProviderEvent:
        # Nothing is parsed until the signature checks out.
        if not self._secret:
            logger.error("billing_webhook_secret_missing")
            raise ConfigurationError("Webhook signing secret is not configured")
        verify_signature(
            raw_payload,
            signature_header,
            self._secret,
            tolerance_s=self._tolerance_s,
        )
        return parse_event(raw_payload)

    async def process(self, event: ProviderEvent, repository: SubscriptionRepository) -> ProcessResult:
        async with self._locks.hold(lock_key(event)):
            try:
                async with repository.atomic():
                    if await repository.is_event_processed(event.id):
                        logger.info("billing_event_duplicate event_id=%s event_type=%s", event.id, event.type)
                        return ProcessResult(event.id, event.type, OUTCOME_DUPLICATE)
                    handler = self._handlers.get(event.type)
                    if handler is None:
                        logger.info("billing_event_unhandled event_id=%s event_type=%s", event.id, event.type)
                        result = ProcessResult(event.id, event.type, OUTCOME_IGNORED)
                    else:
                        result = await handler(event, repository)
                    # Only a completed handler marks the event processed.
                    await repository.record_event_processed(event.id, event.type, result.outcome)
            except IntegrityError:
                # Another instance recorded the same event first; its changes stand.
                if await repository.is_event_processed(event.id):
                    logger.info("billing_event_duplicate_race event_id=%s", event.id)
                    return ProcessResult(event.id, event.type, OUTCOME_DUPLICATE)
                raise
        logger.info(
            "billing_event_processed event_id=%s event_type=%s outcome=%s subscription_id=%s",
            event.id,
            event.type,
            result.outcome,
            result.subscription_id,
        )
        return result

    def _dropped(self, event: ProviderEvent, reason: str) -> ProcessResult:
        logger.warning("billing_event_dropped reason=%s event_id=%s event_type=%s", reason, event.id, event.type)
        return ProcessResult(event.id, event.type, OUTCOME_DROPPED, metadata={"reason": reason})

    def _optional_tier(self, event: ProviderEvent, value: Any) -> PlanTier | None:
        if not value:
            return None
        try:
            return parse_tier(value)
        except UnknownTierError:
            logger.warning("billing_event_unknown_tier event_id=%s tier=%s", event.id, value)
            return None

    async def _handle_checkout_completed(
        self, event: ProviderEvent, repository: SubscriptionRepository
    ) -> ProcessResult:
        obj = event.data
        metadata = _metadata(obj)
        external_tenant_id = metadata.get("tenant_id")
        tier_value = metadata.get("plan_tier")
        if not external_tenant_id or not tier_value:
            return self._dropped(event, "missing_metadata")
        tier = self._optional_tier(event, tier_value)
        if tier is None:
            return self._dropped(event, "unknown_tier")
        external_subscription_id = _ref(obj.get("subscription"))
        if external_subscription_id is None:
            return self._dropped(event, "missing_subscription")

        # A paid signup must never be lost, even if onboarding has not created the tenant.
        tenant = await repository.ensure_tenant(str(external_tenant_id))
        subscription = await repository.upsert_from_external(
            tenant.id,
            external_subscription_id,
            tier,
            SubscriptionStatus.ACTIVE,
            external_customer_id=_ref(obj.get("customer")),
        )
        return ProcessResult(
            event.id,
            event.type,
            OUTCOME_PROCESSED,
            action="subscription.activated",
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            metadata={"tier": tier.value},
        )

    async def _handle_subscription_upsert(
        self, event: ProviderEvent, repository: SubscriptionRepository
    ) -> ProcessResult:
        obj = event.data
        metadata = _metadata(obj)
        external_tenant_id = metadata.get("tenant_id")
        if not external_tenant_id:
            return self._dropped(event, "missing_tenant_id")
        external_subscription_id = _ref(obj.get("id"))
        if external_subscription_id is None:
            return self._dropped(event, "missing_subscription")
        external_status = obj.get("status")
        status = map_external_status(external_status)
        if status is None and external_status:
            logger.info(
                "billing_event_status_unrecognized event_id=%s status=%s",
                event.id,
                external_status,
            )

        tenant = await repository.ensure_tenant(str(external_tenant_id))
        subscription = await repository.upsert_from_external(
            tenant.id,
            external_subscription_id,
            self._optional_tier(event, metadata.get("plan_tier")),
            status,
            external_customer_id=_ref(obj.get("customer")),
        )
        return ProcessResult(
            event.id,
            event.type,
            OUTCOME_PROCESSED,
            action="subscription.updated",
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            metadata={"status": subscription.status, "tier": subscription.tier},
        )

    async def _handle_subscription_deleted(
        self, event: ProviderEvent, repository: SubscriptionRepository
    ) -> ProcessResult:
        external_subscription_id = _ref(event.data.get("id"))
        subscription = (
            await repository.get_by_external_id(external_subscription_id) if external_subscription_id else None
        )
        if subscription is None:
            logger.info("billing_event_no_match event_id=%s event_type=%s", event.id, event.type)
            return ProcessResult(event.id, event.type, OUTCOME_NO_MATCH)
        # Tier is kept so entitlement survives until the grace period ends.
        subscription = await repository.apply_cancellation(subscription.id)
        return ProcessResult(
            event.id,
            event.type,
            OUTCOME_PROCESSED,
            action="subscription.cancelled",
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
        )

    async def _handle_invoice_paid(self, event: ProviderEvent, repository: SubscriptionRepository) -> ProcessResult:
        return await self._apply_invoice(event, repository, paid=True)

    async def _handle_invoice_payment_failed(
        self, event: ProviderEvent, repository: SubscriptionRepository
    ) -> ProcessResult:
        return await self._apply_invoice(event, repository, paid=False)

    async def _apply_invoice(
        self,
        event: ProviderEvent,
        repository: SubscriptionRepository,
        *,
        paid: bool,
    ) -> ProcessResult:
        external_subscription_id = invoice_subscription_id(event.data)
        subscription = (
            await repository.get_by_external_id(external_subscription_id) if external_subscription_id else None
        )
        if subscription is None:
            logger.info("billing_event_no_match event_id=%s event_type=%s", event.id, event.type)
            return ProcessResult(event.id, event.type, OUTCOME_NO_MATCH)
        if paid:
            subscription = await repository.apply_invoice_paid(subscription.id)
            action = "billing.invoice_paid"
        else:
            subscription = await repository.apply_payment_failure(subscription.id)
            action = "billing.payment_failed"
        return ProcessResult(
            event.id,
            event.type,
            OUTCOME_PROCESSED,
            action=action,
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            metadata={"status": subscription.status},
        )


_processor: BillingEventProcessor | None = None


def get_billing_event_processor() -> BillingEventProcessor:
    # Share one processor so per-subscription locks span concurrent deliveries.
    global _processor
    if _processor is None:
        _processor = BillingEventProcessor()
    return _processor


def reset_billing_event_processor() -> None:
    global _processor
    _processor = None
