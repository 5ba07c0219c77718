"""
Credit Ledger Configuration and Constants

Plan catalog, operation tables, retention windows and webhook event types
are defined here. Prices are in TRY, balances are in credits.
"""

import os

# ==================== PLAN CATALOG ====================
# Snapshotted onto the account at grant time, never re-derived per request
PLAN_CATALOG = {
    "none": {
        "name": "No Plan",
        "credits": 0,
        "duration_days": 0,
        "price": 0,
        "features": [],
        "allowed_models": []
    },
    "tier1": {
        "name": "Temel Paket",
        "credits": 50,
        "duration_days": 30,
        "price": 300,
        "features": ["generate", "lyrics"],
        "allowed_models": ["V4", "V4_5"]
    },
    "tier2": {
        "name": "Uzman Paket",
        "credits": 500,
        "duration_days": 180,
        "price": 2800,
        "features": ["generate", "lyrics", "extend", "cover"],
        "allowed_models": ["V4", "V4_5", "V4_5PLUS", "V5"]
    },
    "tier3": {
        "name": "Pro Paket",
        "credits": 1000,
        "duration_days": 365,
        "price": 5000,
        "features": ["generate", "lyrics", "extend", "cover", "persona"],
        "allowed_models": ["V4", "V4_5", "V4_5PLUS", "V4_5ALL", "V5"]
    }
}

PLAN_CURRENCY = "TRY"

# External plan identifiers (storefront / webhook payloads) -> catalog id
PLAN_ALIASES = {
    "free": "none",
    "temel": "tier1",
    "starter": "tier1",
    "starter-plan": "tier1",
    "uzman": "tier2",
    "pro-plan": "tier2",
    "pro": "tier3",
    "enterprise": "tier3",
    "enterprise-plan": "tier3"
}

# ==================== OPERATIONS ====================
# Generation operation -> (feature gate, ledger action, default model)
OPERATIONS = {
    "song": {"feature": "generate", "action": "generate", "default_model": "V4"},
    "cover": {"feature": "cover", "action": "cover", "default_model": "V5"},
    "extend": {"feature": "extend", "action": "extend", "default_model": "V5"},
    "persona": {"feature": "persona", "action": "persona", "default_model": None},
    "lyrics": {"feature": "lyrics", "action": "lyrics", "default_model": None}
}

# Every paid operation costs one credit
CREDITS_PER_OPERATION = 1

LEDGER_ACTIONS = {
    "generate", "extend", "cover", "lyrics", "persona",
    "subscription_start", "renew", "cancel", "expire", "gift", "manual"
}

# ==================== RETENTION WINDOWS ====================
PENDING_ORDER_TTL_MINUTES = int(os.environ.get("PENDING_ORDER_TTL_MINUTES", "60"))
TASK_RECORD_TTL_HOURS = int(os.environ.get("TASK_RECORD_TTL_HOURS", "24"))
DISPATCH_LEASE_SECONDS = 300
CREDENTIAL_MAX_AGE_DAYS = int(os.environ.get("CREDENTIAL_MAX_AGE_DAYS", "7"))

# Conditional updates retried this many times under contention
MAX_CONDITIONAL_RETRIES = 3

# ==================== WEBHOOK EVENT TYPES ====================
PAYMENT_EVENT_TYPES = {
    "SUBSCRIPTION_CREATED": "new_subscription",
    "ORDER_PAID": "new_subscription",
    "SUBSCRIPTION_RENEWED": "renewal",
    "RECURRING_CHARGE_SUCCESS": "renewal",
    "SUBSCRIPTION_CANCELLED": "cancellation",
    "SUBSCRIPTION_EXPIRED": "expiration",
    "GIFT_ORDER_PAID": "gift_payment",
    "MEMBER_CREATED": "member_created",
    "MEMBER_DELETED": "member_deleted"
}

SIGNATURE_HEADER = "x-signature"

# Provider task states that end a job
TERMINAL_TASK_STATUSES = {"completed", "success", "failed", "error"}

# ==================== ERROR MESSAGES ====================
ERROR_MESSAGES = {
    "UNAUTHENTICATED": "Authentication required. Please sign in again.",
    "UNKNOWN_ACCOUNT": "No account exists for this identity.",
    "SUBSCRIPTION_EXPIRED": "Your plan has expired. Please purchase a new plan.",
    "INSUFFICIENT_CREDIT": "Not enough credits. Please purchase a new plan.",
    "FEATURE_NOT_ENTITLED": "Your plan does not include this feature.",
    "MODEL_NOT_ENTITLED": "Your plan does not include this model.",
    "INVALID_PLAN": "Unknown plan.",
    "DUPLICATE_EVENT": "Event already applied.",
    "CREDIT_SYNC_FAILED": "The action completed but the credit could not be recorded.",
    "STORE_UNAVAILABLE": "Credit store is temporarily unavailable. Please retry.",
    "INVALID_SIGNATURE": "Invalid webhook signature.",
    "ADMIN_AUTH_REQUIRED": "Administrative credential required.",
    "ADMIN_NOT_CONFIGURED": "Administrative endpoints are disabled.",
    "PENDING_ORDER_NOT_FOUND": "Order not found.",
    "TASK_NOT_FOUND": "Task not found.",
    "UNSUPPORTED_OPERATION": "Unsupported operation.",
    "INVALID_PARAMETERS": "Missing or invalid generation parameters.",
    "ENTRY_NOT_FOUND": "Ledger entry not found.",
    "PROVIDER_ERROR": "The generation provider rejected the request."
}
