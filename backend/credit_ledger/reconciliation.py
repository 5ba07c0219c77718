"""
Reconciliation Intake - Payment and provider webhook consumer

Payment events drive Settlement Engine grants, cancellations and expiries.
Every handler is safe to call more than once for the same orderId: the
ledger claim on the order id turns a replay into DuplicateEvent, which is
acknowledged as success without reapplying anything.

Provider task events only update the durable task record. They never move
credits, which were settled when the job was dispatched.

Gift flow (GIFT_ORDER_PAID):
1. Find the pending order (pendingOrderId, else newest for identity/email)
2. Get or create the account, grant one credit keyed by the payment order
3. Take the dispatch lease, submit the requested operation
4. Spend the credit against the provider task id, mark the order fulfilled

A failed dispatch leaves the order pending and the credit on the account, so
a payment replay retries the dispatch without granting twice.
"""

import hashlib
import hmac
import logging
import uuid
from typing import Optional, Dict, Callable, Awaitable

from pymongo.errors import PyMongoError

from .account_store import AccountStore
from .config import PAYMENT_EVENT_TYPES, OPERATIONS
from .errors import (
    DuplicateEvent,
    InvalidPlan,
    InvalidSignature,
    PendingOrderNotFound,
    ProviderError,
    InvalidParameters,
    UnsupportedOperation,
)
from .models import Account, PaymentEvent, ProviderTaskEvent, WebhookAck, PendingOrder
from .pending_orders import PendingOrderStore
from .provider_client import GenerationProvider
from .settlement import SettlementEngine
from .task_store import TaskStore
from .timestamps import iso_now

logger = logging.getLogger(__name__)


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Check an HMAC-SHA256 hex signature of the raw body.

    Returns:
        True when verified, False when no secret is configured (unverified mode)

    Raises:
        InvalidSignature when a secret is configured and the signature does not match
    """
    if not secret:
        logger.warning("Webhook secret not set - accepting event without signature verification")
        return False

    expected_sig = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected_sig, (signature or '').strip().lower()):
        logger.warning("Invalid webhook signature")
        raise InvalidSignature()
    return True


class ReconciliationIntake:
    """Applies asynchronous payment and provider events."""

    def __init__(self, db, provider: Optional[GenerationProvider] = None):
        self.db = db
        self.provider = provider or GenerationProvider()
        self.engine = SettlementEngine(db)
        self.accounts = AccountStore(db)
        self.orders = PendingOrderStore(db)
        self.tasks = TaskStore(db)

    # ==================== PAYMENT EVENTS ====================

    async def handle_payment_event(self, event: PaymentEvent, signature_verified: bool = False) -> WebhookAck:
        """Route a payment event to its handler and record the outcome."""
        kind = PAYMENT_EVENT_TYPES.get(event.event_type.strip().upper())

        handlers: Dict[str, Callable[[PaymentEvent], Awaitable[WebhookAck]]] = {
            "new_subscription": self._on_new_subscription,
            "renewal": self._on_renewal,
            "cancellation": self._on_cancellation,
            "expiration": self._on_expiration,
            "gift_payment": self.fulfil_pending_order,
            "member_created": self._on_member_created,
            "member_deleted": self._on_cancellation,
        }

        handler = handlers.get(kind)
        if handler is None:
            logger.info(f"Ignoring unhandled payment event: {event.event_type}")
            ack = WebhookAck(status="ignored", message=f"Unhandled event type: {event.event_type}")
        else:
            try:
                ack = await handler(event)
            except DuplicateEvent as e:
                logger.info(f"Duplicate {event.event_type} for order {event.order_id}")
                ack = WebhookAck(status="duplicate", message=e.message, account_id=event.account_identity)
            except InvalidPlan as e:
                logger.error(f"{event.event_type} rejected: {e.message}")
                ack = WebhookAck(status="ignored", message=e.message, account_id=event.account_identity)

        await self._log_event(event, kind, ack, signature_verified)
        return ack

    async def _on_new_subscription(self, event: PaymentEvent) -> WebhookAck:
        plan_id = event.plan_id
        if not plan_id:
            raise InvalidPlan("Subscription event without planId")

        account = await self._get_or_create_account(event.account_identity, event.email, event.display_name)
        self._warn_without_order_id(event)
        entry = await self.engine.grant(
            account.account_id,
            plan_id=plan_id,
            order_id=event.order_id,
            action="subscription_start",
            valid_until=event.valid_until
        )
        return WebhookAck(
            status="processed",
            message="Subscription activated",
            account_id=account.account_id,
            balance=entry.balance_after,
            external_ref=event.order_id
        )

    async def _on_renewal(self, event: PaymentEvent) -> WebhookAck:
        account = await self._find_account(event)
        if account is None:
            return self._unknown_identity(event)

        self._warn_without_order_id(event)
        entry = await self.engine.grant(
            account.account_id,
            plan_id=event.plan_id or account.plan_id,
            order_id=event.order_id,
            action="renew",
            valid_until=event.valid_until
        )
        return WebhookAck(
            status="processed",
            message="Subscription renewed",
            account_id=account.account_id,
            balance=entry.balance_after,
            external_ref=event.order_id
        )

    async def _on_cancellation(self, event: PaymentEvent) -> WebhookAck:
        account = await self._find_account(event)
        if account is None:
            return self._unknown_identity(event)

        entry = await self.engine.cancel(account.account_id, order_id=event.order_id, reason=event.event_type)
        return WebhookAck(
            status="processed",
            message="Subscription cancelled",
            account_id=account.account_id,
            balance=entry.balance_after,
            external_ref=event.order_id
        )

    async def _on_expiration(self, event: PaymentEvent) -> WebhookAck:
        account = await self._find_account(event)
        if account is None:
            return self._unknown_identity(event)

        entry = await self.engine.expire(account.account_id, order_id=event.order_id)
        if entry is None:
            return WebhookAck(status="duplicate", message="Account already expired", account_id=account.account_id, balance=0)
        return WebhookAck(
            status="processed",
            message="Subscription expired",
            account_id=account.account_id,
            balance=entry.balance_after,
            external_ref=event.order_id
        )

    async def _on_member_created(self, event: PaymentEvent) -> WebhookAck:
        account = await self._get_or_create_account(event.account_identity, event.email, event.display_name)
        return WebhookAck(
            status="processed",
            message="Member registered",
            account_id=account.account_id,
            balance=account.balance
        )

    # ==================== GIFT / PENDING ORDERS ====================

    async def fulfil_pending_order(self, event: PaymentEvent) -> WebhookAck:
        """Grant the paid credit for a pending order and dispatch its operation."""
        if event.pending_order_id:
            try:
                order = await self.orders.get(event.pending_order_id)
            except PendingOrderNotFound:
                order = None
        else:
            order = await self.orders.find_pending_for(account_id=event.account_identity, email=event.email)

        if order is None:
            logger.warning(f"Gift payment {event.order_id} has no matching pending order")
            return WebhookAck(status="ignored", message="No pending order for this payment", external_ref=event.order_id)
        if order.status == "fulfilled":
            return WebhookAck(
                status="duplicate",
                message="Order already fulfilled",
                account_id=order.account_id,
                external_ref=order.external_ref
            )
        if order.status == "expired":
            return WebhookAck(status="ignored", message="Order expired before payment", account_id=order.account_id)

        account = await self._get_or_create_account(
            order.account_id or event.account_identity,
            order.email or event.email,
            order.display_name or event.display_name
        )
        await self.orders.attach_payment(order.order_id, account.account_id, event.order_id)

        payment_ref = event.order_id or order.order_id
        try:
            await self.engine.grant(
                account.account_id,
                credits=1,
                order_id=payment_ref,
                action="gift",
                description=f"Gift payment for {order.operation}",
                metadata={"pending_order_id": order.order_id}
            )
        except DuplicateEvent:
            # Credit landed on an earlier delivery, only the dispatch is retried
            logger.info(f"Gift credit for {payment_ref} already granted, retrying dispatch")

        return await self.dispatch_order(order, account.account_id)

    async def dispatch_order(self, order: PendingOrder, account_id: str) -> WebhookAck:
        claimed = await self.orders.claim_dispatch(order.order_id)
        if claimed is None:
            return WebhookAck(status="duplicate", message="Dispatch already in progress", account_id=account_id)

        try:
            task_id = await self.provider.submit(order.operation, claimed.requested_operation)
        except (ProviderError, InvalidParameters, UnsupportedOperation) as e:
            await self.orders.release_dispatch(order.order_id)
            logger.error(f"Dispatch of pending order {order.order_id} failed: {e.message}")
            return WebhookAck(
                status="processed",
                message=f"Payment recorded, dispatch failed: {e.message}",
                account_id=account_id
            )

        await self.tasks.record(task_id, order.operation, account_id=account_id, order_id=order.order_id)
        entry, sync_error = await self.engine.settle_dispatch(account_id, OPERATIONS[order.operation]["action"], task_id)
        await self.orders.mark_fulfilled(order.order_id, task_id)

        return WebhookAck(
            status="processed",
            message="Order fulfilled" if sync_error is None else "Order fulfilled, credit sync flagged",
            account_id=account_id,
            balance=entry.balance_after if entry else None,
            external_ref=task_id
        )

    # ==================== PROVIDER EVENTS ====================

    async def handle_task_event(self, event: ProviderTaskEvent) -> WebhookAck:
        """Update the task record. Credits are never moved here."""
        task = await self.tasks.update_status(
            event.task_id,
            event.status.strip().lower(),
            result_urls=event.audio_urls,
            error=event.error
        )
        logger.info(f"Task {event.task_id} reported {event.status}")
        return WebhookAck(
            status="processed",
            message=f"Task {task.status if task else event.status}",
            account_id=task.account_id if task else None,
            external_ref=event.task_id
        )

    # ==================== HELPERS ====================

    async def _find_account(self, event: PaymentEvent) -> Optional[Account]:
        if event.account_identity:
            return await self.accounts.get(event.account_identity)
        if event.email:
            return await self.accounts.find_by_email(event.email)
        return None

    async def _get_or_create_account(
        self,
        identity: Optional[str],
        email: Optional[str],
        display_name: Optional[str]
    ) -> Account:
        if not identity:
            existing = await self.accounts.find_by_email(email) if email else None
            if existing:
                return existing
            identity = f"guest_{uuid.uuid4().hex[:16]}"
        account, _ = await self.accounts.get_or_create(identity, email or "", display_name or "")
        return account

    @staticmethod
    def _unknown_identity(event: PaymentEvent) -> WebhookAck:
        logger.warning(f"{event.event_type} for unknown identity {event.account_identity or event.email}")
        return WebhookAck(status="ignored", message="Unknown account", account_id=event.account_identity)

    @staticmethod
    def _warn_without_order_id(event: PaymentEvent) -> None:
        if not event.order_id:
            logger.warning(f"{event.event_type} without orderId cannot be deduplicated")

    async def _log_event(self, event: PaymentEvent, kind: Optional[str], ack: WebhookAck, signature_verified: bool):
        """Record the event and its outcome in the payment_events audit log."""
        try:
            await self.db.payment_events.insert_one({
                "event_id": str(uuid.uuid4()),
                "event_type": event.event_type,
                "kind": kind,
                "order_id": event.order_id,
                "account_identity": event.account_identity,
                "plan_id": event.plan_id,
                "result": ack.status,
                "message": ack.message,
                "signature_verified": signature_verified,
                "received_at": iso_now()
            })
        except PyMongoError as e:
            logger.error(f"Could not log payment event {event.event_type}: {e}")
