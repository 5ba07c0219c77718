"""
Test Suite: Reconciliation Intake
=================================

- HMAC signature verification and unverified mode
- Subscription events: create, renew (stacking), cancel, expire, replay
- Gift flow: pending order -> grant -> dispatch -> spend -> fulfilled
- Dispatch failure keeps the order pending and the credit on the account
- Provider task events update task records without moving credits
- Pending order retention sweep
"""

import hashlib
import hmac
from datetime import timedelta

import pytest

from credit_ledger.errors import InvalidSignature, ProviderError
from credit_ledger.models import PaymentEvent, ProviderTaskEvent
from credit_ledger.pending_orders import PendingOrderStore
from credit_ledger.scheduler_setup import make_pending_order_sweep, make_task_record_sweep, make_lapsed_account_sweep
from credit_ledger.task_store import TaskStore
from credit_ledger.reconciliation import verify_signature
from credit_ledger.timestamps import to_iso, utc_now


def payment(event_type, **fields):
    return PaymentEvent(eventType=event_type, **fields)


class TestSignature:

    def test_valid_signature(self):
        body = b'{"eventType":"ORDER_PAID"}'
        sig = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert verify_signature(body, sig, "s3cret") is True

    def test_invalid_signature(self):
        with pytest.raises(InvalidSignature):
            verify_signature(b"{}", "deadbeef", "s3cret")

    def test_missing_signature_with_secret(self):
        with pytest.raises(InvalidSignature):
            verify_signature(b"{}", None, "s3cret")

    def test_no_secret_accepts_unverified(self):
        assert verify_signature(b"{}", None, None) is False


class TestSubscriptionEvents:

    async def test_new_subscription_creates_account(self, intake, accounts, db):
        ack = await intake.handle_payment_event(
            payment("SUBSCRIPTION_CREATED", accountIdentity="member_1", planId="starter", orderId="ord_1", email="M1@Example.com")
        )

        assert ack.status == "processed"
        assert ack.balance == 50
        account = await accounts.require("member_1")
        assert account.plan_id == "tier1"
        assert account.email == "m1@example.com"
        logged = await db.payment_events.find_one({"order_id": "ord_1"})
        assert logged["result"] == "processed"
        assert logged["signature_verified"] is False

    async def test_replay_is_duplicate(self, intake, accounts, ledger):
        event = payment("ORDER_PAID", accountIdentity="member_1", planId="tier1", orderId="ord_1")
        await intake.handle_payment_event(event)

        ack = await intake.handle_payment_event(event)

        assert ack.status == "duplicate"
        assert (await accounts.require("member_1")).balance == 50
        assert len(await ledger.find_by_external_ref("ord_1", kind="grant")) == 1

    async def test_renewal_stacks(self, intake, accounts, engine):
        await intake.handle_payment_event(payment("ORDER_PAID", accountIdentity="m", planId="tier1", orderId="o1"))
        await engine.spend("m", "generate")

        ack = await intake.handle_payment_event(payment("recurring_charge_success", accountIdentity="m", orderId="o2"))

        assert ack.status == "processed"
        assert ack.balance == 99
        entries = await intake.engine.ledger.find_by_external_ref("o2")
        assert entries[0].action == "renew"

    async def test_renewal_for_unknown_identity_is_ignored(self, intake, accounts):
        ack = await intake.handle_payment_event(payment("SUBSCRIPTION_RENEWED", accountIdentity="nobody", planId="tier1", orderId="o3"))
        assert ack.status == "ignored"
        assert await accounts.get("nobody") is None

    async def test_cancellation_keeps_balance(self, intake, accounts):
        await intake.handle_payment_event(payment("ORDER_PAID", accountIdentity="m", planId="tier2", orderId="o1"))

        ack = await intake.handle_payment_event(payment("SUBSCRIPTION_CANCELLED", accountIdentity="m", orderId="c1"))

        account = await accounts.require("m")
        assert ack.status == "processed"
        assert account.subscription_status == "cancelled"
        assert account.balance == 500

    async def test_expiration_event_zeroes_once(self, intake, accounts):
        await intake.handle_payment_event(payment("ORDER_PAID", accountIdentity="m", planId="tier1", orderId="o1"))

        first = await intake.handle_payment_event(payment("SUBSCRIPTION_EXPIRED", accountIdentity="m", orderId="e1"))
        second = await intake.handle_payment_event(payment("SUBSCRIPTION_EXPIRED", accountIdentity="m", orderId="e1"))

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert (await accounts.require("m")).balance == 0

    async def test_expiration_replay_after_renewal_is_duplicate(self, intake, accounts, ledger):
        await intake.handle_payment_event(payment("SUBSCRIPTION_CREATED", accountIdentity="m", planId="tier1", orderId="ord_1"))
        expired = payment("SUBSCRIPTION_EXPIRED", accountIdentity="m", orderId="exp_1")
        await intake.handle_payment_event(expired)
        await intake.handle_payment_event(payment("SUBSCRIPTION_RENEWED", accountIdentity="m", planId="tier1", orderId="ord_2"))

        ack = await intake.handle_payment_event(expired)

        account = await accounts.require("m")
        assert ack.status == "duplicate"
        assert account.balance == 50
        assert account.subscription_status == "active"
        assert account.total_granted - account.total_spent == account.balance
        assert len(await ledger.find_by_external_ref("exp_1", kind="cancellation")) == 1

    async def test_unknown_plan_is_ignored_not_granted(self, intake, accounts):
        ack = await intake.handle_payment_event(payment("ORDER_PAID", accountIdentity="m", planId="gold", orderId="o1"))
        assert ack.status == "ignored"
        assert (await accounts.require("m")).balance == 0

    async def test_member_created_registers_without_credits(self, intake, accounts):
        ack = await intake.handle_payment_event(payment("MEMBER_CREATED", accountIdentity="m", email="m@example.com"))
        assert ack.status == "processed"
        account = await accounts.require("m")
        assert account.plan_id == "none"
        assert account.balance == 0

    async def test_unhandled_event_type(self, intake, db):
        ack = await intake.handle_payment_event(payment("INVOICE_VOIDED", accountIdentity="m"))
        assert ack.status == "ignored"
        assert await db.payment_events.count_documents({"result": "ignored"}) == 1


class TestGiftFlow:

    @pytest.fixture
    def orders(self, db):
        return PendingOrderStore(db)

    async def test_paid_order_is_dispatched_and_fulfilled(self, intake, orders, accounts, ledger, provider):
        order = await orders.create("guest@example.com", "song", {"prompt": "a song for mum"}, display_name="Guest")

        ack = await intake.handle_payment_event(
            payment("GIFT_ORDER_PAID", email="guest@example.com", orderId="pay_1", pendingOrderId=order.order_id)
        )

        assert ack.status == "processed"
        assert ack.external_ref == "task_abc123"
        provider.submit.assert_awaited_once_with("song", {"prompt": "a song for mum"})

        fulfilled = await orders.get(order.order_id)
        assert fulfilled.status == "fulfilled"
        assert fulfilled.external_ref == "task_abc123"
        assert fulfilled.payment_ref == "pay_1"

        account = await accounts.require(fulfilled.account_id)
        assert account.account_id.startswith("guest_")
        assert account.balance == 0
        assert account.total_granted == 1
        assert account.total_spent == 1
        spends = await ledger.find_by_external_ref("task_abc123", kind="spend")
        assert len(spends) == 1

    async def test_order_matched_by_email_when_no_order_id(self, intake, orders):
        order = await orders.create("guest@example.com", "lyrics", {"prompt": "rain"})

        ack = await intake.handle_payment_event(payment("GIFT_ORDER_PAID", email="GUEST@example.com", orderId="pay_2"))

        assert ack.status == "processed"
        assert (await orders.get(order.order_id)).status == "fulfilled"

    async def test_existing_account_is_reused(self, intake, orders, make_account):
        await make_account(account_id="known", email="known@example.com")
        order = await orders.create("known@example.com", "song", {}, account_id="known")

        ack = await intake.handle_payment_event(payment("GIFT_ORDER_PAID", orderId="pay_3", pendingOrderId=order.order_id))

        assert ack.account_id == "known"

    async def test_replay_after_fulfilment(self, intake, orders, provider):
        order = await orders.create("guest@example.com", "song", {})
        event = payment("GIFT_ORDER_PAID", orderId="pay_4", pendingOrderId=order.order_id)
        await intake.handle_payment_event(event)

        ack = await intake.handle_payment_event(event)

        assert ack.status == "duplicate"
        assert provider.submit.await_count == 1

    async def test_dispatch_failure_keeps_order_pending_then_retries(self, intake, orders, accounts, provider):
        order = await orders.create("guest@example.com", "song", {})
        event = payment("GIFT_ORDER_PAID", orderId="pay_5", pendingOrderId=order.order_id)
        provider.submit.side_effect = ProviderError("provider down")

        ack = await intake.handle_payment_event(event)

        pending = await orders.get(order.order_id)
        assert "dispatch failed" in ack.message
        assert pending.status == "pending"
        assert pending.dispatch_claimed_at is None
        assert (await accounts.require(pending.account_id)).balance == 1

        provider.submit.side_effect = None
        provider.submit.return_value = "task_retry"
        ack = await intake.handle_payment_event(event)

        assert ack.status == "processed"
        assert ack.external_ref == "task_retry"
        account = await accounts.require(pending.account_id)
        assert account.balance == 0
        assert account.total_granted == 1

    async def test_dispatch_lease_blocks_concurrent_dispatch(self, intake, orders, provider):
        order = await orders.create("guest@example.com", "song", {})
        await orders.claim_dispatch(order.order_id)

        ack = await intake.handle_payment_event(payment("GIFT_ORDER_PAID", orderId="pay_6", pendingOrderId=order.order_id))

        assert ack.status == "duplicate"
        provider.submit.assert_not_awaited()

    async def test_expired_order_is_not_dispatched(self, intake, orders, db, provider):
        order = await orders.create("guest@example.com", "song", {})
        await db.pending_orders.update_one(
            {"order_id": order.order_id},
            {"$set": {"created_at": to_iso(utc_now() - timedelta(hours=2))}}
        )
        await make_pending_order_sweep(db)()

        ack = await intake.handle_payment_event(payment("GIFT_ORDER_PAID", orderId="pay_7", pendingOrderId=order.order_id))

        assert (await orders.get(order.order_id)).status == "expired"
        assert ack.status == "ignored"
        provider.submit.assert_not_awaited()

    async def test_payment_without_matching_order(self, intake):
        ack = await intake.handle_payment_event(payment("GIFT_ORDER_PAID", email="nobody@example.com", orderId="pay_8"))
        assert ack.status == "ignored"


class TestProviderEvents:

    async def test_task_event_updates_record_only(self, intake, db, make_account, engine):
        await make_account(credits=2)
        await engine.spend("user_1", "generate", external_ref="task_1")
        await TaskStore(db).record("task_1", "song", account_id="user_1")

        ack = await intake.handle_task_event(
            ProviderTaskEvent(taskId="task_1", status="SUCCESS", audioUrls=["https://cdn.example/1.mp3"])
        )

        task = await TaskStore(db).get("task_1")
        assert ack.account_id == "user_1"
        assert task.status == "success"
        assert task.result_urls == ["https://cdn.example/1.mp3"]
        assert (await intake.accounts.require("user_1")).balance == 1

    async def test_callback_before_dispatch_record_keeps_owner(self, intake, db):
        tasks = TaskStore(db)
        await intake.handle_task_event(ProviderTaskEvent(taskId="t1", status="text_success"))

        await tasks.record("t1", "lyrics", account_id="user_1")

        task = await tasks.get("t1")
        assert task.account_id == "user_1"
        assert task.operation == "lyrics"
        assert task.status == "text_success"
        assert [t.task_id for t in await tasks.list_for_account("user_1")] == ["t1"]

    async def test_unknown_task_is_recorded(self, intake, db):
        await intake.handle_task_event(ProviderTaskEvent(taskId="late_task", status="failed", error="timeout"))
        task = await TaskStore(db).get("late_task")
        assert task.status == "failed"
        assert task.error == "timeout"


class TestSweeps:

    async def test_task_records_removed_after_ttl(self, db):
        tasks = TaskStore(db)
        await tasks.record("old", "song")
        await tasks.record("fresh", "song")
        await db.generation_tasks.update_one(
            {"task_id": "old"},
            {"$set": {"expire_at": to_iso(utc_now() - timedelta(minutes=1))}}
        )

        await make_task_record_sweep(db)()

        assert await tasks.get("old") is None
        assert await tasks.get("fresh") is not None

    async def test_lapsed_accounts_expired_by_sweep(self, db, accounts, make_account, lapse):
        await make_account(account_id="a", plan_id="tier1")
        await make_account(account_id="b", plan_id="tier1")
        await lapse("a")

        await make_lapsed_account_sweep(db)()

        assert (await accounts.require("a")).subscription_status == "expired"
        assert (await accounts.require("b")).balance == 50
