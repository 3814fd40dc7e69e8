from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List, Literal, Union
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"

class NormalizedStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"

class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"

class FeatureFlag(str, Enum):
    DASHBOARD = "dashboard"
    APPOINTMENTS = "appointments"
    SERVICES = "services"
    PROFESSIONALS = "professionals"
    CLIENTS = "clients"
    REVIEWS = "reviews"
    TASKS = "tasks"
    POINTS_PROGRAM = "points_program"
    LOYALTY = "loyalty"
    INVENTORY = "inventory"
    MESSAGES = "messages"
    COUPONS = "coupons"
    FINANCIAL = "financial"
    REPORTS = "reports"
    SETTINGS = "settings"

class IntentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

class StatusSource(str, Enum):
    SIGNUP = "signup"
    HARNESS = "harness"
    WEBHOOK = "webhook"

class UserRole(str, Enum):
    ROLE_COMPANY = "ROLE_COMPANY"
    ROLE_ADMIN = "ROLE_ADMIN"

class AuditAction(str, Enum):
    # Harness
    PAYMENT_FAILURE_SIMULATED = "PAYMENT_FAILURE_SIMULATED"
    PAYMENT_SUCCESS_SIMULATED = "PAYMENT_SUCCESS_SIMULATED"

    # Processor confirmation path
    SUBSCRIPTION_CONFIRMED = "SUBSCRIPTION_CONFIRMED"
    SUBSCRIPTION_STATUS_SYNCED = "SUBSCRIPTION_STATUS_SYNCED"

    # Admin Actions
    PLAN_PRICE_ID_UPDATED = "PLAN_PRICE_ID_UPDATED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"

    # Access Gate
    ACCESS_DENIED = "ACCESS_DENIED"


# ============================================================================
# CORE MODELS
# ============================================================================

class Plan(BaseModel):
    """Billing plan as stored in the plans collection."""
    model_config = ConfigDict(extra="ignore")

    plan_id: int
    name: str
    price: Decimal  # monthly
    annual_price: Optional[Decimal] = None
    max_professionals: int = 1
    free_days: int = 0  # trial days on a first monthly subscription
    permissions: List[FeatureFlag] = Field(default_factory=list)
    is_active: bool = True
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None  # monthly price reference
    stripe_annual_price_id: Optional[str] = None


class Company(BaseModel):
    """Tenant account subject to billing and access gating."""
    model_config = ConfigDict(extra="ignore")

    company_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = True
    plan_status: PlanStatus = PlanStatus.ACTIVE
    plan_id: Optional[int] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None  # last processor-reported status
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_ends_at: Optional[datetime] = None
    status_source: Optional[StatusSource] = None
    updated_at: Optional[datetime] = None


class LatestInvoice(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    total: Optional[int] = None
    paid: Optional[bool] = None
    payment_state: Optional[str] = None


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    company_id: Optional[int] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# ORCHESTRATOR RESULTS (tagged union)
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClientSecretResult(_CamelModel):
    """Processor configured; the client must confirm the payment."""
    kind: Literal["client_secret"] = "client_secret"
    client_secret: str
    intent_id: str
    intent_type: Literal["subscription", "payment_intent", "setup_intent"]


class DemoModeResult(_CamelModel):
    """Processor not configured; no external artifact was created."""
    kind: Literal["demo"] = "demo"
    demo_mode: Literal[True] = True
    message: str


class RedirectResult(_CamelModel):
    """Hosted-flow fallback."""
    kind: Literal["redirect"] = "redirect"
    redirect_url: str
    intent_id: str


SubscriptionIntentResult = Union[ClientSecretResult, DemoModeResult, RedirectResult]


# ============================================================================
# REQUEST MODELS
# ============================================================================

class SimulatePaymentRequest(_CamelModel):
    company_id: int


class StripePriceUpdateRequest(_CamelModel):
    stripe_price_id: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY


class SubscriptionUpgradeRequest(_CamelModel):
    plan_id: int
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    installments: Optional[int] = None


class PublicSubscriptionRequest(_CamelModel):
    """Self-service request; company may come from the token or the body."""
    plan_id: int
    company_id: Optional[int] = None
    billing_period: Optional[BillingPeriod] = None
    is_annual: Optional[bool] = None
    installments: Optional[int] = None

    @field_validator("installments")
    @classmethod
    def _positive_installments(cls, value):
        if value is not None and value < 1:
            raise ValueError("installments must be positive")
        return value

    def resolved_period(self) -> BillingPeriod:
        if self.billing_period is not None:
            return self.billing_period
        return BillingPeriod.ANNUAL if self.is_annual else BillingPeriod.MONTHLY
