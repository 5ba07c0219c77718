"""
Entitlement Guard - Pre-flight check for credit-consuming operations

Gates, in order, each raising a distinct error:
1. Credential missing or undecodable      -> Unauthenticated
2. Identity has no account                -> UnknownAccount
3. Expiry in the past (or status expired) -> SubscriptionExpired
4. Balance below one credit               -> InsufficientCredit
5. Feature not in the plan snapshot       -> FeatureNotEntitled
6. Model not in the plan snapshot         -> ModelNotEntitled

The check is read-only on success and safe to repeat. The only side effect is
gate 3: the first observation of a lapsed account forfeits its balance through
the Settlement Engine, exactly once.

StoreUnavailable propagates, so a store outage denies the action.
"""

import logging
from typing import Optional, Callable, Dict, Any

from utils.auth import decode_credential

from .account_store import AccountStore
from .config import CREDITS_PER_OPERATION
from .errors import (
    CredentialDecodeError,
    Unauthenticated,
    UnknownAccount,
    SubscriptionExpired,
    InsufficientCredit,
    FeatureNotEntitled,
    ModelNotEntitled,
)
from .models import Account
from .settlement import SettlementEngine
from .timestamps import utc_now

logger = logging.getLogger(__name__)


class EntitlementGuard:
    """
    Usage:
        guard = EntitlementGuard(db)
        account = await guard.check(token, "generate", "V4")
        # perform the provider call, then settle_dispatch()
    """

    def __init__(self, db, decode: Callable[[str], Dict[str, Any]] = decode_credential):
        self.db = db
        self.decode = decode
        self.accounts = AccountStore(db)
        self.engine = SettlementEngine(db)

    def resolve_identity(self, credential: Optional[str]) -> Dict[str, Any]:
        if not credential:
            raise Unauthenticated()
        try:
            return self.decode(credential)
        except CredentialDecodeError as e:
            raise Unauthenticated(str(e)) from e

    async def check(self, credential: Optional[str], feature: str, model: Optional[str] = None) -> Account:
        identity = self.resolve_identity(credential)
        return await self.check_account(identity["account_id"], feature, model)

    async def check_account(self, account_id: str, feature: str, model: Optional[str] = None) -> Account:
        account = await self.accounts.get(account_id)
        if account is None:
            raise UnknownAccount(account_id=account_id)

        if account.subscription_status == "expired" or self.accounts.is_lapsed(account, utc_now()):
            await self.enforce_expiry(account)
            raise SubscriptionExpired(expires_at=account.expires_at, balance=0)

        if account.balance < CREDITS_PER_OPERATION:
            raise InsufficientCredit(balance=account.balance, required=CREDITS_PER_OPERATION)

        if feature not in account.allowed_features:
            raise FeatureNotEntitled(
                feature=feature,
                plan_id=account.plan_id,
                balance=account.balance
            )

        if model and model not in account.allowed_models:
            raise ModelNotEntitled(
                model=model,
                plan_id=account.plan_id,
                allowed_models=account.allowed_models
            )

        return account

    async def enforce_expiry(self, account: Account) -> None:
        """Forfeit the balance of a lapsed account if that has not happened yet."""
        if account.subscription_status == "expired":
            return
        entry = await self.engine.expire(account.account_id)
        if entry is not None:
            logger.info(f"Guard observed lapsed plan for {account.account_id} (expired {account.expires_at})")
