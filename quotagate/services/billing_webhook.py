from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Mapping

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.core.config import get_settings
from quotagate.core.errors import (
    CustomerRefConflictError,
    EntitlementStoreUnavailableError,
    WebhookPayloadError,
    WebhookVerificationError,
)
from quotagate.domain.state import (
    PREMIUM_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    TIER_FREE,
    TIER_PREMIUM,
)
from quotagate.persistence.repos.billing_events import get_billing_event, record_billing_event
from quotagate.services.entitlements import EntitlementStore
from quotagate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout_completed"
EVENT_SUBSCRIPTION_CREATED = "subscription_created"
EVENT_SUBSCRIPTION_UPDATED = "subscription_updated"
EVENT_SUBSCRIPTION_DELETED = "subscription_deleted"

OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"

_STRIPE_EVENT_TYPES = {
    "checkout.session.completed": EVENT_CHECKOUT_COMPLETED,
    "customer.subscription.created": EVENT_SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EVENT_SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EVENT_SUBSCRIPTION_DELETED,
}


@dataclass(frozen=True)
class WebhookOutcome:
    # Summarize how an inbound lifecycle event affected entitlement state.
    outcome: str
    event_type: str
    customer_ref: str | None
    tier: str | None = None
    status: str | None = None
    message: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "event_type": self.event_type,
            "customer_ref": self.customer_ref,
            "tier": self.tier,
            "status": self.status,
            "message": self.message,
        }


@dataclass(frozen=True)
class ParsedEvent:
    event_type: str
    customer_ref: str | None
    status_payload: dict[str, Any]


def transition_for(event_type: str, status_payload: Mapping[str, Any]) -> tuple[str, str] | None:
    # Map a lifecycle event to (tier, status); None means the event carries no transition.
    if event_type == EVENT_CHECKOUT_COMPLETED:
        return TIER_PREMIUM, STATUS_ACTIVE
    if event_type in (EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED):
        raw_status = str(status_payload.get("status") or "").strip()
        if not raw_status:
            return None
        tier = TIER_PREMIUM if raw_status.lower() in PREMIUM_STATUSES else TIER_FREE
        return tier, raw_status
    if event_type == EVENT_SUBSCRIPTION_DELETED:
        return TIER_FREE, STATUS_CANCELED
    return None


class EntitlementUpdater:
    """Apply payment lifecycle events to the entitlement store.

    Delivery is at-least-once and unordered, so every transition is written
    last-write-wins and a replay converges on the same state. Provider event
    ids are logged after application and exact redeliveries short-circuit.
    There is no ordering check, so a stale event delivered late still applies.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        store: EntitlementStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store or EntitlementStore(session_factory=session_factory)

    @property
    def store(self) -> EntitlementStore:
        return self._store

    async def handle_event(
        self,
        event_type: str,
        customer_ref: str | None,
        status_payload: Mapping[str, Any] | None = None,
    ) -> WebhookOutcome:
        payload = dict(status_payload or {})
        transition = transition_for(event_type, payload)
        if transition is None:
            logger.info("billing_event_ignored event_type=%s", event_type)
            increment_counter("billing.ignored")
            return WebhookOutcome(OUTCOME_IGNORED, event_type, customer_ref, message="Event carries no entitlement transition")
        if not customer_ref:
            logger.warning("billing_event_missing_customer event_type=%s", event_type)
            increment_counter("billing.noop")
            return WebhookOutcome(OUTCOME_NOOP, event_type, None, message="Event has no customer reference")

        event_id = payload.get("event_id")
        if event_id and await self._already_applied(str(event_id)):
            increment_counter("billing.duplicate")
            logger.info("billing_event_duplicate event_id=%s event_type=%s", event_id, event_type)
            return WebhookOutcome(OUTCOME_DUPLICATE, event_type, customer_ref, message="Event already applied")

        principal_id = payload.get("principal_id")
        if event_type == EVENT_CHECKOUT_COMPLETED and principal_id:
            try:
                await self._store.link_customer_ref(str(principal_id), customer_ref)
            except CustomerRefConflictError:
                # The reference already belongs to someone else; upgrade that owner instead.
                logger.warning(
                    "billing_checkout_link_conflict principal_id=%s customer_ref=%s",
                    principal_id,
                    customer_ref,
                )

        tier, new_status = transition
        matched = await self._store.apply_transition(
            customer_ref,
            tier,
            new_status,
            subscription_ref=payload.get("subscription_ref"),
        )
        outcome = OUTCOME_APPLIED if matched else OUTCOME_NOOP
        if event_id:
            await self._mark_applied(str(event_id), event_type, customer_ref, outcome)
        increment_counter(f"billing.{outcome}")
        return WebhookOutcome(
            outcome,
            event_type,
            customer_ref,
            tier=tier if matched else None,
            status=new_status if matched else None,
            message="Transition applied" if matched else "No principal linked to customer",
        )

    async def _already_applied(self, event_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                existing = await get_billing_event(session, event_id)
        except SQLAlchemyError as exc:
            raise EntitlementStoreUnavailableError("billing event log unavailable") from exc
        # Unmatched events are re-evaluated: the customer may have been linked since.
        return existing is not None and existing.outcome == OUTCOME_APPLIED

    async def _mark_applied(self, event_id: str, event_type: str, customer_ref: str, outcome: str) -> None:
        # Losing this row only costs a harmless re-application on redelivery.
        if outcome != OUTCOME_APPLIED:
            return
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await record_billing_event(
                        session,
                        event_id=event_id,
                        event_type=event_type,
                        customer_ref=customer_ref,
                        outcome=outcome,
                    )
        except SQLAlchemyError as exc:
            logger.warning("billing_event_log_failed event_id=%s", event_id, exc_info=exc)


def verify_stripe_payload(body: bytes, signature: str | None) -> None:
    # Verify Stripe-Signature headers; an unset secret means unverified dev mode.
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.warning("stripe_webhook_secret_missing verifying=false")
        return
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")
    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookVerificationError("Webhook body is not valid UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(
            payload,
            signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_s,
        )
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError("Invalid Stripe signature") from exc


def parse_stripe_event(body: bytes) -> ParsedEvent:
    # Reduce a Stripe event to the updater's (event_type, customer_ref, status_payload) triple.
    try:
        event = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookPayloadError("Webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    stripe_type = str(event.get("type") or "")
    data = event.get("data") or {}
    if not isinstance(data, dict):
        raise WebhookPayloadError("Webhook data must be a JSON object")
    obj = data.get("object") or {}
    if not isinstance(obj, dict):
        raise WebhookPayloadError("Webhook data.object must be a JSON object")

    event_type = _STRIPE_EVENT_TYPES.get(stripe_type, stripe_type)
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    status_payload: dict[str, Any] = {}
    if event.get("id"):
        status_payload["event_id"] = str(event["id"])
    if event_type == EVENT_CHECKOUT_COMPLETED:
        if obj.get("client_reference_id"):
            status_payload["principal_id"] = str(obj["client_reference_id"])
        if obj.get("subscription"):
            status_payload["subscription_ref"] = str(obj["subscription"])
    elif event_type in (EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED, EVENT_SUBSCRIPTION_DELETED):
        if obj.get("status") is not None:
            status_payload["status"] = str(obj["status"])
        if obj.get("id"):
            status_payload["subscription_ref"] = str(obj["id"])

    return ParsedEvent(
        event_type=event_type,
        customer_ref=str(customer) if customer else None,
        status_payload=status_payload,
    )


_entitlement_updater: EntitlementUpdater | None = None


def get_entitlement_updater() -> EntitlementUpdater:
    global _entitlement_updater
    if _entitlement_updater is None:
        from quotagate.persistence.db import SessionLocal

        _entitlement_updater = EntitlementUpdater(session_factory=SessionLocal)
    return _entitlement_updater


def reset_entitlement_updater() -> None:
    # Reset cached services for deterministic tests.
    global _entitlement_updater
    _entitlement_updater = None
