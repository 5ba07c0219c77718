"""
Settlement Engine - The only writer of balances and ledger entries

Ordering policy is act-first: the caller performs the provider call, and only
a confirmed success is committed with spend(). A provider failure commits
nothing, so no refund is needed on that path. refund() remains for
administrative reversal of a committed spend and is allowed once per spend.

Every operation follows the same shape:
1. Claim the ledger entry id (pending)
2. Apply one conditional update to the account
3. Complete the entry with the post-update balance and sequence
"""

import logging
from datetime import datetime
from typing import Optional, Tuple, Callable, Awaitable, Dict, Any

from pymongo.errors import PyMongoError

from .account_store import AccountStore
from .config import CREDITS_PER_OPERATION, MAX_CONDITIONAL_RETRIES
from .errors import (
    LedgerError,
    UnknownAccount,
    InsufficientCredit,
    InvalidPlan,
    CreditSyncFailed,
    StoreUnavailable,
    EntryNotFound,
)
from .ledger import Ledger, grant_entry_id, refund_entry_id, cancellation_entry_id, expiry_entry_id, new_entry_id
from .models import Account, LedgerEntry
from .plan_catalog import get_plan, plan_expiry
from .timestamps import utc_now, to_iso, parse_iso

logger = logging.getLogger(__name__)


class SettlementEngine:
    """
    Spend, refund, grant, cancel and expire against a single account.

    Usage:
        engine = SettlementEngine(db)
        task_id = await provider.submit("song", params)
        entry, sync_error = await engine.settle_dispatch(account_id, "generate", task_id)
    """

    def __init__(self, db):
        self.db = db
        self.accounts = AccountStore(db)
        self.ledger = Ledger(db)

    # ==================== SPEND / REFUND ====================

    async def spend(
        self,
        account_id: str,
        action: str,
        amount: int = CREDITS_PER_OPERATION,
        external_ref: Optional[str] = None,
        description: str = ""
    ) -> LedgerEntry:
        """
        Debit `amount` credits. The floor check is re-evaluated by the store at
        commit time, never taken from an earlier guard read.

        Raises:
            InsufficientCredit if balance < amount at commit time
            UnknownAccount if the account does not exist
        """
        if amount < 1:
            raise ValueError("Spend amount must be positive")

        now = utc_now()
        entry = await self._commit(
            new_entry_id("spend"),
            account_id,
            kind="spend",
            action=action,
            amount=-amount,
            apply=lambda: self.accounts.apply_debit(account_id, amount, now),
            external_ref=external_ref,
            description=description or f"{action} ({amount} credit)"
        )

        if entry is None:
            current = await self.accounts.require(account_id)
            logger.info(f"Spend denied for {account_id}: balance {current.balance} < {amount}")
            raise InsufficientCredit(balance=current.balance, required=amount)

        logger.info(f"Spent {amount} credit(s) for {account_id} on {action}, balance {entry.balance_after}")
        return entry

    async def refund(self, account_id: str, spend_entry_id: str, reason: str = "") -> LedgerEntry:
        """
        Reverse a prior spend. Restores balance and total_spent symmetrically.

        Raises:
            EntryNotFound if the spend does not exist for this account
            DuplicateEvent if the spend was already refunded
        """
        spend = await self.ledger.get(spend_entry_id)
        if spend is None or spend.kind != "spend" or spend.account_id != account_id or spend.status != "completed":
            raise EntryNotFound(entry_id=spend_entry_id)

        amount = -spend.amount
        now = utc_now()
        entry = await self._commit(
            refund_entry_id(spend_entry_id),
            account_id,
            kind="refund",
            action=spend.action,
            amount=amount,
            apply=lambda: self.accounts.apply_refund(account_id, amount, now),
            external_ref=spend.external_ref,
            description=f"Refund of {spend.action}",
            metadata={"refunded_entry_id": spend_entry_id, "reason": reason}
        )
        if entry is None:
            raise UnknownAccount(account_id=account_id)

        logger.info(f"Refunded {amount} credit(s) to {account_id} for {spend_entry_id}: {reason}")
        return entry

    # ==================== GRANT / CANCEL / EXPIRE ====================

    async def grant(
        self,
        account_id: str,
        plan_id: Optional[str] = None,
        credits: Optional[int] = None,
        order_id: Optional[str] = None,
        action: Optional[str] = None,
        valid_until: Optional[str] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> LedgerEntry:
        """
        Add credits, and with a plan, snapshot its entitlements and reset expiry.

        A plan grant sets expires_at to now + duration (or `valid_until` when
        supplied) and reactivates the subscription. Credits always stack on the
        remaining balance. A raw credit grant without a plan leaves plan,
        expiry and status alone.

        Idempotent per `order_id`: a replay raises DuplicateEvent.
        """
        if credits is not None and credits < 1:
            raise ValueError("Grant credits must be positive")

        plan = get_plan(plan_id) if plan_id else None
        if plan is not None and plan.plan_id == "none":
            raise InvalidPlan("Plan 'none' cannot be granted", plan_id=plan_id)
        if plan is None and not credits:
            raise InvalidPlan("A plan or a positive credit amount is required")

        credits_added = credits if credits is not None else plan.credits_granted
        now = utc_now()
        expires_at: Optional[datetime] = None
        if plan is not None:
            expires_at = parse_iso(valid_until) if valid_until else None
            expires_at = expires_at or plan_expiry(plan, now)

        action = action or ("subscription_start" if plan else "manual")
        entry_id = grant_entry_id(order_id) if order_id else new_entry_id("grant")

        entry = await self._commit(
            entry_id,
            account_id,
            kind="grant",
            action=action,
            amount=credits_added,
            apply=lambda: self.accounts.apply_grant(account_id, credits_added, now, plan, expires_at),
            external_ref=order_id,
            description=description or (f"{plan.name} plan" if plan else f"{credits_added} credits"),
            metadata={"plan_id": plan.plan_id if plan else None, **(metadata or {})}
        )
        if entry is None:
            raise UnknownAccount(account_id=account_id)

        logger.info(
            f"Granted {credits_added} credit(s) to {account_id} "
            f"(plan={plan.plan_id if plan else '-'}, order={order_id}), balance {entry.balance_after}"
        )
        return entry

    async def cancel(self, account_id: str, order_id: Optional[str] = None, reason: str = "") -> LedgerEntry:
        """Mark the subscription cancelled. The remaining balance is kept."""
        now = utc_now()
        entry_id = cancellation_entry_id(order_id) if order_id else new_entry_id("cancellation")
        entry = await self._commit(
            entry_id,
            account_id,
            kind="cancellation",
            action="cancel",
            amount=0,
            apply=lambda: self.accounts.apply_cancel(account_id, now),
            external_ref=order_id,
            description="Subscription cancelled",
            metadata={"reason": reason} if reason else None
        )
        if entry is None:
            raise UnknownAccount(account_id=account_id)

        logger.info(f"Cancelled subscription for {account_id}, balance kept at {entry.balance_after}")
        return entry

    async def expire(self, account_id: str, order_id: Optional[str] = None) -> Optional[LedgerEntry]:
        """
        Forfeit the remaining balance and mark the account expired, once.

        The update is conditional on the observed balance, so a concurrent
        spend or grant forces a re-read. The forfeited amount is added to
        total_spent to keep total_granted - total_spent == balance.

        With an `order_id` the entry id is `expiry:<orderId>`, so a replay of the
        same expiration event raises DuplicateEvent even after a renewal.

        Returns:
            The cancellation entry, or None if the account was already expired
        """
        for attempt in range(MAX_CONDITIONAL_RETRIES):
            account = await self.accounts.require(account_id)
            if account.subscription_status == "expired":
                return None

            observed = account.balance
            now = utc_now()
            entry = await self._commit(
                expiry_entry_id(order_id) if order_id else new_entry_id("cancellation"),
                account_id,
                kind="cancellation",
                action="expire",
                amount=-observed,
                apply=lambda: self.accounts.apply_expiry(account_id, observed, now),
                external_ref=order_id,
                description="Plan expired, remaining credits forfeited",
                metadata={"expires_at": account.expires_at, "forfeited": observed}
            )
            if entry is not None:
                logger.info(f"Expired account {account_id}, forfeited {observed} credit(s)")
                return entry

            logger.debug(f"Expiry of {account_id} contended, retry {attempt + 1}")

        logger.warning(f"Expiry of {account_id} still contended after {MAX_CONDITIONAL_RETRIES} attempts")
        raise StoreUnavailable("Account is busy, please retry", account_id=account_id)

    # ==================== ACT-FIRST SETTLEMENT ====================

    async def settle_dispatch(
        self,
        account_id: str,
        action: str,
        external_ref: str,
        amount: int = CREDITS_PER_OPERATION
    ) -> Tuple[Optional[LedgerEntry], Optional[CreditSyncFailed]]:
        """
        Commit the spend for a provider action that already succeeded.

        The provider result must still reach the user, so a failed commit is
        flagged for reconciliation and returned instead of raised.

        Returns:
            (entry, None) on success, (None, CreditSyncFailed) when flagged
        """
        try:
            entry = await self.spend(account_id, action, amount, external_ref=external_ref)
            return entry, None
        except CreditSyncFailed as e:
            return None, e
        except (InsufficientCredit, StoreUnavailable, UnknownAccount) as e:
            sync_error = CreditSyncFailed(
                account_id=account_id,
                external_ref=external_ref,
                cause=e.code
            )
            await self._flag_sync_issue(account_id, action, -amount, external_ref, None, e)
            return None, sync_error

    # ==================== INTERNALS ====================

    async def _commit(
        self,
        entry_id: str,
        account_id: str,
        kind: str,
        action: str,
        amount: int,
        apply: Callable[[], Awaitable[Optional[Account]]],
        external_ref: Optional[str] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[LedgerEntry]:
        """
        Claim, apply, complete.

        Returns None when the conditional update matched nothing (the claim is
        released). Raises CreditSyncFailed when the account moved but the
        entry could not be completed.
        """
        await self.ledger.claim(entry_id, account_id, kind, action, amount, external_ref, description, metadata)

        try:
            account = await apply()
        except LedgerError:
            await self.ledger.release(entry_id)
            raise

        if account is None:
            await self.ledger.release(entry_id)
            return None

        try:
            return await self.ledger.complete(entry_id, account)
        except StoreUnavailable as e:
            await self._flag_sync_issue(account_id, action, amount, external_ref, entry_id, e)
            raise CreditSyncFailed(account_id=account_id, entry_id=entry_id) from e

    async def _flag_sync_issue(
        self,
        account_id: str,
        action: str,
        amount: int,
        external_ref: Optional[str],
        entry_id: Optional[str],
        cause: LedgerError
    ) -> None:
        """Record a balance/ledger divergence for out-of-band reconciliation."""
        issue = {
            "account_id": account_id,
            "action": action,
            "amount": amount,
            "external_ref": external_ref,
            "entry_id": entry_id,
            "cause": cause.code,
            "message": cause.message,
            "resolved": False,
            "created_at": to_iso(utc_now())
        }
        logger.error(
            f"CREDIT_SYNC_FAILED account={account_id} action={action} amount={amount} "
            f"ref={external_ref} entry={entry_id} cause={cause.code}"
        )
        try:
            await self.db.credit_sync_issues.insert_one(issue)
        except PyMongoError as e:
            logger.error(f"Could not persist credit sync issue for {account_id}: {e}")
