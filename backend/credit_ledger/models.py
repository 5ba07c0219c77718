"""
Credit Ledger Data Models

Pydantic models for ledger operations.
These define the structure of documents stored in MongoDB collections
and the request/response bodies of the credit API.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal, Dict, Any


PlanId = Literal["none", "tier1", "tier2", "tier3"]
SubscriptionStatus = Literal["none", "active", "cancelled", "expired"]
EntryKind = Literal["spend", "refund", "grant", "cancellation"]
EntryStatus = Literal["completed", "pending", "failed", "refunded"]
OrderStatus = Literal["pending", "fulfilled", "expired"]


# ==================== PLAN MODELS ====================

class PlanDefinition(BaseModel):
    """Entitlement bundle granted by a plan (read-only catalog entry)"""
    plan_id: PlanId
    name: str
    credits_granted: int
    duration_days: int
    features: List[str] = Field(default_factory=list)
    allowed_models: List[str] = Field(default_factory=list)
    price: float = 0


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """One end user's entitlement record"""
    account_id: str
    email: str = ""
    display_name: str = ""
    plan_id: PlanId = "none"
    balance: int = 0
    total_granted: int = 0
    total_spent: int = 0
    allowed_features: List[str] = Field(default_factory=list)
    allowed_models: List[str] = Field(default_factory=list)
    subscription_status: SubscriptionStatus = "none"
    expires_at: Optional[str] = None  # ISO datetime string
    purchased_at: Optional[str] = None
    ledger_seq: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AccountSummary(BaseModel):
    """Response model for the credit summary endpoint"""
    account_id: str
    email: str
    display_name: str
    plan_id: str
    balance: int
    total_granted: int
    total_spent: int
    features: List[str]
    allowed_models: List[str]
    subscription_status: str
    expires_at: Optional[str] = None
    days_remaining: int
    is_active: bool


# ==================== LEDGER MODELS ====================

class LedgerEntry(BaseModel):
    """Balance-affecting event with the post-transaction balance snapshot"""
    entry_id: str
    account_id: str
    kind: EntryKind
    action: str
    amount: int
    balance_after: Optional[int] = None
    external_ref: Optional[str] = None
    status: EntryStatus = "completed"
    seq: Optional[int] = None
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str  # ISO datetime string


# ==================== PENDING ORDER MODELS ====================

class PendingOrder(BaseModel):
    """Recorded intent to perform a paid action once payment clears"""
    order_id: str
    account_id: Optional[str] = None
    email: str
    display_name: str = ""
    operation: str
    requested_operation: Dict[str, Any] = Field(default_factory=dict)
    status: OrderStatus = "pending"
    external_ref: Optional[str] = None
    payment_ref: Optional[str] = None
    dispatch_claimed_at: Optional[str] = None
    created_at: str
    fulfilled_at: Optional[str] = None


class PendingOrderCreateRequest(BaseModel):
    """Guest request to queue a generation until payment clears"""
    email: str = Field(..., min_length=3)
    display_name: Optional[str] = None
    operation: str = Field("song", description="song, cover, extend, persona or lyrics")
    parameters: Dict[str, Any] = Field(default_factory=dict)


# ==================== WEBHOOK MODELS ====================

class PaymentEvent(BaseModel):
    """Payment/subscription webhook payload"""
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(..., alias="eventType")
    account_identity: Optional[str] = Field(None, alias="accountIdentity")
    plan_id: Optional[str] = Field(None, alias="planId")
    order_id: Optional[str] = Field(None, alias="orderId")
    valid_until: Optional[str] = Field(None, alias="validUntil")
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    pending_order_id: Optional[str] = Field(None, alias="pendingOrderId")


class ProviderTaskEvent(BaseModel):
    """Provider callback reporting a generation job state"""
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId")
    status: str
    audio_urls: Optional[List[str]] = Field(None, alias="audioUrls")
    error: Optional[str] = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook senders"""
    status: Literal["processed", "duplicate", "ignored"]
    message: str = ""
    account_id: Optional[str] = None
    balance: Optional[int] = None
    external_ref: Optional[str] = None


# ==================== TASK MODELS ====================

class GenerationTask(BaseModel):
    """Durable, TTL-swept record of a dispatched provider job"""
    task_id: str
    account_id: Optional[str] = None
    operation: str
    status: str = "submitted"
    result_urls: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    expire_at: str


class GenerationRequest(BaseModel):
    """Body of a paid generation request (provider parameters pass through)"""
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None


# ==================== ADMIN MODELS ====================

class AdminGrantRequest(BaseModel):
    """Privileged grant: a catalog plan or a raw credit amount"""
    model_config = ConfigDict(populate_by_name=True)

    account_identity: str = Field(..., alias="accountIdentity")
    plan_id: Optional[str] = Field(None, alias="planId")
    raw_credit_amount: Optional[int] = Field(None, alias="rawCreditAmount", ge=1)
    order_id: Optional[str] = Field(None, alias="orderId")
    email: Optional[str] = None
    reason: str = "manual"


class AdminRefundRequest(BaseModel):
    """Privileged reversal of a prior spend entry"""
    model_config = ConfigDict(populate_by_name=True)

    account_identity: str = Field(..., alias="accountIdentity")
    entry_id: str = Field(..., alias="entryId")
    reason: str = "manual_refund"
