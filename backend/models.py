from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class EstateRole(str, Enum):
    OWNER = "OWNER"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class PlanId(str, Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class EstateStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class InviteStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    VOID = "VOID"


class TaskStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class InvoiceLineItemType(str, Enum):
    TIME = "TIME"
    EXPENSE = "EXPENSE"
    ADJUSTMENT = "ADJUSTMENT"


class EstateEventType(str, Enum):
    # Estate
    ESTATE_CREATED = "ESTATE_CREATED"
    ESTATE_UPDATED = "ESTATE_UPDATED"
    ESTATE_DELETED = "ESTATE_DELETED"

    # Invoices
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_STATUS_CHANGED = "INVOICE_STATUS_CHANGED"

    # Documents
    DOCUMENT_CREATED = "DOCUMENT_CREATED"
    DOCUMENT_UPDATED = "DOCUMENT_UPDATED"
    DOCUMENT_DELETED = "DOCUMENT_DELETED"

    # Notes
    NOTE_CREATED = "NOTE_CREATED"
    NOTE_UPDATED = "NOTE_UPDATED"
    NOTE_PINNED = "NOTE_PINNED"
    NOTE_UNPINNED = "NOTE_UNPINNED"
    NOTE_DELETED = "NOTE_DELETED"

    # Tasks
    TASK_CREATED = "TASK_CREATED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_REOPENED = "TASK_REOPENED"
    TASK_DELETED = "TASK_DELETED"

    # Collaborators
    COLLABORATOR_ADDED = "COLLABORATOR_ADDED"
    COLLABORATOR_ROLE_CHANGED = "COLLABORATOR_ROLE_CHANGED"
    COLLABORATOR_REMOVED = "COLLABORATOR_REMOVED"
    COLLABORATOR_INVITE_SENT = "COLLABORATOR_INVITE_SENT"
    COLLABORATOR_INVITE_REVOKED = "COLLABORATOR_INVITE_REVOKED"
    COLLABORATOR_INVITE_ACCEPTED = "COLLABORATOR_INVITE_ACCEPTED"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: EmailStr
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    # Billing snapshot synced from Stripe webhooks
    subscription_plan_id: Optional[PlanId] = None
    subscription_status: Optional[SubscriptionStatus] = SubscriptionStatus.FREE
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

    last_login_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Collaborator(BaseModel):
    """Embedded in an Estate; OWNER is never stored here."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    role: EstateRole = EstateRole.VIEWER
    added_at: datetime = Field(default_factory=utc_now)


class EstateInvite(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str
    email: str
    role: EstateRole
    status: InviteStatus = InviteStatus.PENDING
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class Estate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    estate_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    label: str
    decedent_name: str
    date_of_death: Optional[str] = None
    court_county: Optional[str] = None
    court_state: Optional[str] = None
    court_case_number: Optional[str] = None
    status: EstateStatus = EstateStatus.OPEN
    collaborators: List[Collaborator] = Field(default_factory=list)
    invites: List[EstateInvite] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class EstateDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    document_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    estate_id: str
    owner_id: str
    subject: str  # BANKING, PROPERTY, INSURANCE, IDENTITY, OTHER...
    label: str
    location: Optional[str] = None
    url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    is_sensitive: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class EstateNote(BaseModel):
    model_config = ConfigDict(extra="ignore")

    note_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    estate_id: str
    owner_id: str
    created_by: str
    body: str = Field(max_length=5000)
    pinned: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class EstateTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    estate_id: str
    owner_id: str
    created_by: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    related_document_id: Optional[str] = None
    related_invoice_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class InvoiceLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: InvoiceLineItemType
    label: str
    quantity: float = 1
    rate: float = 0
    amount: Optional[float] = None


class Invoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    invoice_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    estate_id: str
    owner_id: str
    status: InvoiceStatus = InvoiceStatus.DRAFT
    invoice_number: Optional[str] = None
    issue_date: datetime = Field(default_factory=utc_now)
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    currency: str = "USD"
    line_items: List[InvoiceLineItem] = Field(default_factory=list)
    subtotal: float = 0
    tax_rate: float = 0
    tax_amount: float = 0
    total_amount: float = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class EstateEvent(BaseModel):
    """Append-only activity record."""
    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    estate_id: str
    owner_id: str
    type: EstateEventType
    entity_id: Optional[str] = None
    summary: str = Field(max_length=240)
    detail: Optional[str] = Field(default=None, max_length=4000)
    meta: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)


class WebhookEvent(BaseModel):
    """Idempotency record; expires via TTL index on created_at."""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    type: str
    created_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
