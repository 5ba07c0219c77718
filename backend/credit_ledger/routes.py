"""
Credit Ledger API Routes

Endpoints (mounted under /api):
- GET  /health                   - liveness and DB ping
- POST /auth/sync                - resolve identity, create account, refresh credential
- GET  /credits                  - credit summary
- GET  /credits/ledger           - transaction history
- GET  /credits/stats            - spend counts per action
- GET  /credits/plans            - plan catalog
- POST /generate/{operation}     - guarded paid generation
- GET  /tasks, /tasks/{taskId}   - generation task state
- POST /orders, GET /orders/{id} - guest pending orders
- POST /webhooks/payment         - payment/subscription events
- POST /webhooks/provider        - provider task callbacks
- /admin/credits/*               - privileged grant, refund, stats
"""

import os
import json
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Query
from pydantic import ValidationError

from database import get_db, check_db_connection
from utils.auth import get_bearer_credential, get_current_identity, require_admin_key, create_token

from .account_store import AccountStore
from .config import OPERATIONS, PLAN_CURRENCY, PENDING_ORDER_TTL_MINUTES, SIGNATURE_HEADER, TERMINAL_TASK_STATUSES
from .errors import DuplicateEvent, UnsupportedOperation, TaskNotFound, ProviderError
from .guard import EntitlementGuard
from .ledger import Ledger
from .models import (
    AccountSummary,
    GenerationRequest,
    PendingOrderCreateRequest,
    PaymentEvent,
    ProviderTaskEvent,
    WebhookAck,
    AdminGrantRequest,
    AdminRefundRequest,
)
from .pending_orders import PendingOrderStore
from .plan_catalog import list_plans
from .provider_client import GenerationProvider, build_payload
from .reconciliation import ReconciliationIntake, verify_signature
from .settlement import SettlementEngine
from .task_store import TaskStore
from .timestamps import utc_now

logger = logging.getLogger(__name__)


def get_provider() -> GenerationProvider:
    """FastAPI dependency for the generation provider (overridden in tests)."""
    return GenerationProvider()


system_router = APIRouter(tags=["System"])
auth_router = APIRouter(prefix="/auth", tags=["Auth"])
credits_router = APIRouter(prefix="/credits", tags=["Credits"])
generate_router = APIRouter(prefix="/generate", tags=["Generation"])
tasks_router = APIRouter(prefix="/tasks", tags=["Generation"])
orders_router = APIRouter(prefix="/orders", tags=["Orders"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
admin_router = APIRouter(prefix="/admin/credits", tags=["Admin"], dependencies=[Depends(require_admin_key)])


# ==================== SYSTEM ====================

@system_router.get("/health")
async def health(db=Depends(get_db)):
    db_ok, db_error = await check_db_connection(db)
    return {
        "status": "ok" if db_ok else "degraded",
        "database": "ok" if db_ok else "unavailable"
    }


# ==================== AUTH ====================

@auth_router.post("/sync")
async def sync_identity(identity: dict = Depends(get_current_identity), db=Depends(get_db)):
    """
    Resolve the credential to an account, creating it on first sight.

    Returns a refreshed credential and the credit summary. A lapsed plan is
    expired here the first time it is observed.
    """
    accounts = AccountStore(db)
    account, created = await accounts.get_or_create(identity["account_id"], identity["email"], identity["name"])

    if accounts.is_lapsed(account, utc_now()) and account.subscription_status != "expired":
        await EntitlementGuard(db).enforce_expiry(account)
        account = await accounts.require(account.account_id)

    return {
        "token": create_token(account.account_id, account.email, account.display_name),
        "created": created,
        "account": accounts.summary(account)
    }


# ==================== CREDITS ====================

@credits_router.get("", response_model=AccountSummary)
async def get_credits(identity: dict = Depends(get_current_identity), db=Depends(get_db)):
    accounts = AccountStore(db)
    account = await accounts.require(identity["account_id"])
    return accounts.summary(account)


@credits_router.get("/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    kind: Optional[str] = Query(None, description="spend, refund, grant or cancellation"),
    action: Optional[str] = None,
    identity: dict = Depends(get_current_identity),
    db=Depends(get_db)
):
    """Transaction history, newest first."""
    await AccountStore(db).require(identity["account_id"])
    ledger = Ledger(db)
    entries = await ledger.history(identity["account_id"], limit=limit, skip=skip, kind=kind, action=action)

    return {
        "entries": [entry.model_dump() for entry in entries],
        "count": len(entries),
        "total": await ledger.count(identity["account_id"])
    }


@credits_router.get("/stats")
async def get_stats(identity: dict = Depends(get_current_identity), db=Depends(get_db)):
    account = await AccountStore(db).require(identity["account_id"])
    stats = await Ledger(db).stats(account.account_id)
    return {
        "balance": account.balance,
        "total_granted": account.total_granted,
        "total_spent": account.total_spent,
        **stats
    }


@credits_router.get("/plans")
async def get_plans():
    return {
        "plans": [plan.model_dump() for plan in list_plans()],
        "currency": PLAN_CURRENCY
    }


# ==================== GENERATION ====================

@generate_router.post("/{operation}")
async def generate(
    operation: str,
    body: GenerationRequest,
    token: Optional[str] = Depends(get_bearer_credential),
    db=Depends(get_db),
    provider: GenerationProvider = Depends(get_provider)
):
    """
    Guard -> provider -> settle.

    Nothing is committed unless the provider accepted the job. If the spend
    cannot be recorded afterwards the task id is still returned, with
    credit_sync "failed".
    """
    op = OPERATIONS.get(operation)
    if op is None:
        raise UnsupportedOperation(operation=operation)

    params: Dict[str, Any] = body.model_dump(exclude_none=True)
    model = (params.get("model") or op["default_model"]) if op["default_model"] else None

    account = await EntitlementGuard(db).check(token, op["feature"], model)

    if model:
        params["model"] = model
    task_id = await provider.submit(operation, params, allow_persona="persona" in account.allowed_features)

    await TaskStore(db).record(task_id, operation, account_id=account.account_id)
    entry, sync_error = await SettlementEngine(db).settle_dispatch(account.account_id, op["action"], task_id)

    return {
        "task_id": task_id,
        "operation": operation,
        "credit_sync": "committed" if sync_error is None else "failed",
        "entry_id": entry.entry_id if entry else None,
        "balance": entry.balance_after if entry else None
    }


# ==================== TASKS ====================

@tasks_router.get("")
async def list_tasks(
    limit: int = Query(20, ge=1, le=100),
    identity: dict = Depends(get_current_identity),
    db=Depends(get_db)
):
    tasks = await TaskStore(db).list_for_account(identity["account_id"], limit)
    return {"tasks": [task.model_dump() for task in tasks], "count": len(tasks)}


@tasks_router.get("/{task_id}")
async def get_task(
    task_id: str,
    identity: dict = Depends(get_current_identity),
    db=Depends(get_db),
    provider: GenerationProvider = Depends(get_provider)
):
    """Stored task state, refreshed from the provider until it is terminal."""
    tasks = TaskStore(db)
    task = await tasks.get(task_id)
    if task is None or (task.account_id and task.account_id != identity["account_id"]):
        raise TaskNotFound(task_id=task_id)

    if task.status in TERMINAL_TASK_STATUSES:
        return task.model_dump()

    try:
        state = await provider.query_status(task_id, task.operation)
    except ProviderError as e:
        logger.warning(f"Status poll for {task_id} failed: {e.message}")
        return {**task.model_dump(), "stale": True}

    updated = await tasks.update_status(task_id, state["status"], state["result_urls"], state.get("error"))
    return updated.model_dump()


# ==================== PENDING ORDERS ====================

@orders_router.post("")
async def create_order(body: PendingOrderCreateRequest, db=Depends(get_db)):
    """
    Record a guest's intent to run an operation once payment clears.

    Parameters are validated now so a paid order cannot fail on a missing field.
    """
    if body.operation not in OPERATIONS:
        raise UnsupportedOperation(operation=body.operation)
    build_payload(body.operation, body.parameters)

    existing = await AccountStore(db).find_by_email(body.email)
    order = await PendingOrderStore(db).create(
        email=body.email,
        operation=body.operation,
        parameters=body.parameters,
        display_name=body.display_name or "",
        account_id=existing.account_id if existing else None
    )
    return {
        "order_id": order.order_id,
        "status": order.status,
        "operation": order.operation,
        "created_at": order.created_at,
        "expires_in_minutes": PENDING_ORDER_TTL_MINUTES
    }


@orders_router.get("/{order_id}")
async def get_order(order_id: str, db=Depends(get_db)):
    order = await PendingOrderStore(db).get(order_id)
    return {
        "order_id": order.order_id,
        "status": order.status,
        "operation": order.operation,
        "task_id": order.external_ref,
        "created_at": order.created_at,
        "fulfilled_at": order.fulfilled_at
    }


# ==================== WEBHOOKS ====================

async def _read_signed_body(request: Request, secret_env: str):
    body = await request.body()
    verified = verify_signature(body, request.headers.get(SIGNATURE_HEADER), os.environ.get(secret_env))
    try:
        return json.loads(body.decode() or "{}"), verified
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")


@webhooks_router.post("/payment", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    db=Depends(get_db),
    provider: GenerationProvider = Depends(get_provider)
):
    """
    Payment/subscription events. Replays are acknowledged as duplicate.

    Store outages surface as 503 so the sender retries.
    """
    data, verified = await _read_signed_body(request, "PAYMENT_WEBHOOK_SECRET")
    try:
        event = PaymentEvent.model_validate(data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payment event: {e.errors()[0]['msg']}")

    logger.info(f"Received payment webhook: {event.event_type} (order={event.order_id}, verified={verified})")
    return await ReconciliationIntake(db, provider).handle_payment_event(event, signature_verified=verified)


@webhooks_router.post("/provider", response_model=WebhookAck)
async def provider_webhook(request: Request, db=Depends(get_db)):
    data, _ = await _read_signed_body(request, "PROVIDER_WEBHOOK_SECRET")

    # Provider callbacks nest the job under "data"
    payload = data.get("data") if isinstance(data.get("data"), dict) and "taskId" not in data else data
    try:
        event = ProviderTaskEvent.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid task event: {e.errors()[0]['msg']}")

    return await ReconciliationIntake(db).handle_task_event(event)


# ==================== ADMIN ====================

@admin_router.post("/grant")
async def admin_grant(body: AdminGrantRequest, db=Depends(get_db)):
    """Grant a plan or raw credits, bypassing payment verification."""
    accounts = AccountStore(db)
    account, _ = await accounts.get_or_create(body.account_identity, body.email or "")

    try:
        entry = await SettlementEngine(db).grant(
            account.account_id,
            plan_id=body.plan_id,
            credits=body.raw_credit_amount,
            order_id=body.order_id,
            action="manual",
            description=body.reason,
            metadata={"admin": True, "reason": body.reason}
        )
    except DuplicateEvent as e:
        return {"status": "duplicate", "message": e.message, "account_id": account.account_id}

    account = await accounts.require(account.account_id)
    return {"status": "processed", "entry": entry.model_dump(), "account": accounts.summary(account)}


@admin_router.post("/refund")
async def admin_refund(body: AdminRefundRequest, db=Depends(get_db)):
    try:
        entry = await SettlementEngine(db).refund(body.account_identity, body.entry_id, body.reason)
    except DuplicateEvent as e:
        return {"status": "duplicate", "message": e.message, "entry_id": body.entry_id}
    return {"status": "processed", "entry": entry.model_dump()}


@admin_router.get("/stats")
async def admin_stats(db=Depends(get_db)):
    """Aggregate ledger statistics."""
    total_accounts = await db.accounts.count_documents({})
    by_status = await db.accounts.aggregate([
        {"$group": {"_id": "$subscription_status", "count": {"$sum": 1}}}
    ]).to_list(10)
    orders = await db.pending_orders.aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}}}
    ]).to_list(10)
    open_issues = await db.credit_sync_issues.count_documents({"resolved": False})

    return {
        "total_accounts": total_accounts,
        "accounts_by_status": {s["_id"]: s["count"] for s in by_status},
        "ledger_totals": await Ledger(db).totals(),
        "pending_orders_by_status": {s["_id"]: s["count"] for s in orders},
        "open_credit_sync_issues": open_issues
    }


ledger_routers = [
    system_router,
    auth_router,
    credits_router,
    generate_router,
    tasks_router,
    orders_router,
    webhooks_router,
    admin_router,
]
