"""Cash verification ledger: owners record cash VIP payments, admins confirm them."""

from __future__ import annotations

import logging
from datetime import timedelta

import aiosqlite

from claims.catalog import SQLiteCatalog
from claims.engine import PAYMENT_STATE_MACHINE, normalize_reason, require_reason
from claims.errors import InvalidTransition, NotFound, Unauthorized, ValidationError
from claims.models import (
    PAYMENT_ACTION_REJECT,
    PAYMENT_ACTION_VERIFY,
    PAYMENT_PENDING,
    RESOURCE_ESTABLISHMENT,
    VIP_ACTIVE,
    VIP_CANCELLED,
    Actor,
    ClaimableResource,
    PaymentVerification,
    VipSubscription,
)
from claims.notifications import (
    ADMIN_RECIPIENT,
    EVENT_PAYMENT_REJECTED,
    EVENT_PAYMENT_SUBMITTED,
    EVENT_PAYMENT_VERIFIED,
    EVENT_VIP_CANCELLED,
    LoggingNotificationEmitter,
    NotificationEmitter,
    NotificationEvent,
    emit_all,
)
from claims.repository import ClaimRepository
from config import CFG
from database import parse_iso_utc, utc_now, with_sqlite_retry

from .pricing import price_for


logger = logging.getLogger(__name__)


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise Unauthorized("Only an admin can verify cash payments.")


def _append_note(existing: str | None, note: str) -> str:
    if not existing:
        return note
    return f"{existing}\n{note}"


class CashVerificationLedger:
    """pending -> verified | rejected; notes may be added at any time."""

    def __init__(
        self,
        repository: ClaimRepository | None = None,
        emitter: NotificationEmitter | None = None,
        *,
        currency: str | None = None,
    ) -> None:
        self.repository = repository or ClaimRepository()
        self.emitter = emitter or LoggingNotificationEmitter()
        self.currency = str(currency or CFG.payment_currency).strip().upper()

    async def _load(self, db: aiosqlite.Connection, transaction_id: int) -> PaymentVerification:
        payment = await self.repository.get_payment_verification(db, int(transaction_id))
        if payment is None:
            raise NotFound(f"Payment verification {transaction_id} not found.")
        return payment

    async def _require_establishment_owner(
        self, db: aiosqlite.Connection, owner: Actor, establishment_id: str, *, doing: str
    ) -> ClaimableResource:
        resource = await self.repository.get_resource(db, str(establishment_id))
        if resource is None:
            raise NotFound(f"Establishment {establishment_id} not found.")
        if resource.kind != RESOURCE_ESTABLISHMENT:
            raise ValidationError("VIP subscriptions apply to establishments only.")
        controller_id = await SQLiteCatalog(self.repository, db).get_controller(resource.id)
        if not owner.id or controller_id != owner.id:
            raise Unauthorized(f"Only the establishment owner can {doing}.")
        return resource

    async def record_cash_payment(
        self,
        owner: Actor,
        establishment_id: str,
        duration_days: int,
        amount: int,
        currency: str | None = None,
    ) -> PaymentVerification:
        price = price_for(duration_days)
        try:
            amount_value = int(amount)
        except (TypeError, ValueError) as error:
            raise ValidationError(f"Invalid amount: {amount}") from error
        if amount_value != price.price:
            raise ValidationError(
                f"Amount {amount_value} does not match the {price.duration_days}-day price {price.price}."
            )
        currency_code = str(currency or self.currency).strip().upper()
        if currency_code != self.currency:
            raise ValidationError(f"Cash payments are accepted in {self.currency} only.")

        async def _op() -> PaymentVerification:
            async with self.repository.transaction() as db:
                resource = await self._require_establishment_owner(
                    db, owner, establishment_id, doing="record a cash payment"
                )
                transaction_id = await self.repository.insert_payment_verification(
                    db,
                    establishment_id=resource.id,
                    amount=amount_value,
                    currency=currency_code,
                    duration_days=price.duration_days,
                    submitted_by=owner.id,
                    state=PAYMENT_PENDING,
                )
                await self.repository.write_audit_log(
                    db,
                    entity="payment",
                    entity_id=transaction_id,
                    actor_id=owner.id,
                    action="payment_submitted",
                    payload={
                        "establishment_id": resource.id,
                        "amount": amount_value,
                        "currency": currency_code,
                        "duration_days": price.duration_days,
                    },
                )
                return await self._load(db, transaction_id)

        payment = await with_sqlite_retry(_op, where="payments.record_cash", db_path=self.repository.db_path)
        logger.info(
            "Cash payment %s recorded for %s by %s: %s %s / %s days",
            payment.id,
            payment.establishment_id,
            owner.id,
            payment.amount,
            payment.currency,
            payment.duration_days,
        )
        await emit_all(
            self.emitter,
            [NotificationEvent(type=EVENT_PAYMENT_SUBMITTED, recipient_id=ADMIN_RECIPIENT, transaction_id=payment.id)],
        )
        return payment

    async def verify(self, transaction_id: int, admin: Actor, notes: str | None = None) -> PaymentVerification:
        """Confirm the cash and extend VIP from max(current expiry, now)."""
        _require_admin(admin)
        clean_notes = normalize_reason(notes)

        async def _op() -> tuple[PaymentVerification, VipSubscription]:
            async with self.repository.transaction() as db:
                payment = await self._load(db, transaction_id)
                new_state = PAYMENT_STATE_MACHINE.next_state(payment.state, PAYMENT_ACTION_VERIFY)

                verified_at = utc_now()
                current = await self.repository.get_vip_subscription(db, payment.establishment_id)
                current_expiry = parse_iso_utc(current.expires_at) if current else None
                running = current is not None and current.status == VIP_ACTIVE
                if running and current_expiry is not None and current_expiry > verified_at:
                    base, starts_at = current_expiry, current.starts_at
                else:
                    base, starts_at = verified_at, verified_at.isoformat()
                expires_at = (base + timedelta(days=int(payment.duration_days))).isoformat()

                await self.repository.update_payment_verification(
                    db,
                    payment.id,
                    expected_version=payment.version,
                    state=new_state,
                    admin_notes=clean_notes if clean_notes is not None else payment.admin_notes,
                    decided_by=admin.id,
                    decided_at=verified_at.isoformat(),
                    vip_expires_at=expires_at,
                )
                subscription = await self.repository.upsert_vip_subscription(
                    db,
                    establishment_id=payment.establishment_id,
                    starts_at=starts_at,
                    expires_at=expires_at,
                    transaction_id=payment.id,
                )
                await self.repository.write_audit_log(
                    db,
                    entity="payment",
                    entity_id=payment.id,
                    actor_id=admin.id,
                    action="payment_verified",
                    payload={"notes": clean_notes, "vip_expires_at": expires_at},
                )
                return await self._load(db, payment.id), subscription

        payment, subscription = await with_sqlite_retry(
            _op, where="payments.verify", db_path=self.repository.db_path
        )
        logger.info(
            "Cash payment %s verified by %s; VIP for %s until %s",
            payment.id,
            admin.id,
            subscription.establishment_id,
            subscription.expires_at,
        )
        await emit_all(
            self.emitter,
            [
                NotificationEvent(
                    type=EVENT_PAYMENT_VERIFIED,
                    recipient_id=payment.submitted_by,
                    transaction_id=payment.id,
                    reason_or_notes=clean_notes,
                )
            ],
        )
        return payment

    async def reject(self, transaction_id: int, admin: Actor, reason: str | None) -> PaymentVerification:
        _require_admin(admin)

        async def _op() -> tuple[PaymentVerification, str | None]:
            async with self.repository.transaction() as db:
                payment = await self._load(db, transaction_id)
                new_state = PAYMENT_STATE_MACHINE.next_state(payment.state, PAYMENT_ACTION_REJECT)
                clean_reason = require_reason(PAYMENT_ACTION_REJECT, reason)
                await self.repository.update_payment_verification(
                    db,
                    payment.id,
                    expected_version=payment.version,
                    state=new_state,
                    admin_notes=_append_note(payment.admin_notes, clean_reason or ""),
                    decided_by=admin.id,
                    decided_at=utc_now().isoformat(),
                )
                await self.repository.write_audit_log(
                    db,
                    entity="payment",
                    entity_id=payment.id,
                    actor_id=admin.id,
                    action="payment_rejected",
                    payload={"reason": clean_reason},
                )
                return await self._load(db, payment.id), clean_reason

        payment, clean_reason = await with_sqlite_retry(
            _op, where="payments.reject", db_path=self.repository.db_path
        )
        logger.info("Cash payment %s rejected by %s", payment.id, admin.id)
        await emit_all(
            self.emitter,
            [
                NotificationEvent(
                    type=EVENT_PAYMENT_REJECTED,
                    recipient_id=payment.submitted_by,
                    transaction_id=payment.id,
                    reason_or_notes=clean_reason,
                )
            ],
        )
        return payment

    async def add_note(self, transaction_id: int, admin: Actor, note: str | None) -> PaymentVerification:
        """Append an admin note; allowed in every state, including terminal ones."""
        _require_admin(admin)
        clean_note = normalize_reason(note)
        if clean_note is None:
            raise ValidationError("Note must not be empty.")

        async def _op() -> PaymentVerification:
            async with self.repository.transaction() as db:
                payment = await self._load(db, transaction_id)
                await self.repository.update_payment_verification(
                    db,
                    payment.id,
                    expected_version=payment.version,
                    admin_notes=_append_note(payment.admin_notes, clean_note),
                )
                await self.repository.write_audit_log(
                    db,
                    entity="payment",
                    entity_id=payment.id,
                    actor_id=admin.id,
                    action="payment_note_added",
                    payload={"note": clean_note},
                )
                return await self._load(db, payment.id)

        return await with_sqlite_retry(_op, where="payments.add_note", db_path=self.repository.db_path)

    async def get(self, actor: Actor, transaction_id: int) -> PaymentVerification:
        async with self.repository.connect() as db:
            payment = await self._load(db, transaction_id)
        if not actor.is_admin and actor.id != payment.submitted_by:
            raise Unauthorized("You cannot view this payment.")
        return payment

    async def list_pending(self, admin: Actor, *, limit: int = 50, offset: int = 0) -> list[PaymentVerification]:
        _require_admin(admin)
        async with self.repository.connect() as db:
            return await self.repository.list_payment_verifications(
                db, state=PAYMENT_PENDING, limit=limit, offset=offset
            )

    async def list_for_establishment(self, actor: Actor, establishment_id: str) -> list[PaymentVerification]:
        async with self.repository.connect() as db:
            resource = await self.repository.get_resource(db, str(establishment_id))
            if resource is None:
                raise NotFound(f"Establishment {establishment_id} not found.")
            if not actor.is_admin and actor.id != resource.controller_id:
                raise Unauthorized("You cannot view payments for this establishment.")
            return await self.repository.list_payment_verifications(db, establishment_id=resource.id)

    async def get_vip_subscription(self, establishment_id: str) -> VipSubscription | None:
        async with self.repository.connect() as db:
            return await self.repository.get_vip_subscription(db, str(establishment_id))

    async def cancel_vip_subscription(self, owner: Actor, establishment_id: str) -> VipSubscription:
        """Owner ends a running VIP subscription; the next verified payment starts a new one."""

        async def _op() -> VipSubscription:
            async with self.repository.transaction() as db:
                resource = await self._require_establishment_owner(
                    db, owner, establishment_id, doing="cancel its VIP subscription"
                )
                current = await self.repository.get_vip_subscription(db, resource.id)
                if current is None:
                    raise NotFound(f"Establishment {resource.id} has no VIP subscription.")
                if current.status == VIP_CANCELLED:
                    raise InvalidTransition(f"VIP subscription of {resource.id} is already cancelled.")
                cancelled_at = utc_now()
                current_expiry = parse_iso_utc(current.expires_at)
                if current_expiry is None or current_expiry <= cancelled_at:
                    raise InvalidTransition(f"VIP subscription of {resource.id} has already expired.")
                await self.repository.cancel_vip_subscription(
                    db,
                    resource.id,
                    cancelled_by=owner.id,
                    cancelled_at=cancelled_at.isoformat(),
                )
                await self.repository.write_audit_log(
                    db,
                    entity="payment",
                    entity_id=current.last_transaction_id or 0,
                    actor_id=owner.id,
                    action="vip_cancelled",
                    payload={"establishment_id": resource.id, "expires_at": current.expires_at},
                )
                cancelled = await self.repository.get_vip_subscription(db, resource.id)
            if cancelled is None:
                raise RuntimeError("Failed to read VIP subscription after cancel")
            return cancelled

        subscription = await with_sqlite_retry(
            _op, where="payments.cancel_vip", db_path=self.repository.db_path
        )
        logger.info(
            "VIP subscription of %s cancelled by %s (was running until %s)",
            subscription.establishment_id,
            owner.id,
            subscription.expires_at,
        )
        await emit_all(
            self.emitter,
            [
                NotificationEvent(
                    type=EVENT_VIP_CANCELLED,
                    recipient_id=owner.id,
                    transaction_id=subscription.last_transaction_id,
                    reason_or_notes="Cancelled by establishment owner",
                )
            ],
        )
        return subscription
