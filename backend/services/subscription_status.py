"""Subscription Status Resolver.

Derives the normalized subscription status and the access decision from the
persisted company document and the last processor-reported status.

Local state is authoritative for hard denial (planStatus=suspended or
isActive=false), so the test harness can force denial without a processor.
Processor state is authoritative for the informational status only.

Pure: no database or network access.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from models import Company, NormalizedStatus, PlanStatus

DENIED_STATUSES = frozenset({
    NormalizedStatus.CANCELED,
    NormalizedStatus.INCOMPLETE,
    NormalizedStatus.INCOMPLETE_EXPIRED,
    NormalizedStatus.UNPAID,
})

# Processor vocabulary -> normalized status
_EXTERNAL_STATUS_MAP = {
    "trialing": NormalizedStatus.TRIALING,
    "active": NormalizedStatus.ACTIVE,
    "past_due": NormalizedStatus.PAST_DUE,
    "unpaid": NormalizedStatus.UNPAID,
    "canceled": NormalizedStatus.CANCELED,
    "cancelled": NormalizedStatus.CANCELED,
    "incomplete": NormalizedStatus.INCOMPLETE,
    "incomplete_expired": NormalizedStatus.INCOMPLETE_EXPIRED,
}


@dataclass(frozen=True)
class ResolvedSubscription:
    is_active: bool
    status: NormalizedStatus
    is_on_trial: bool
    in_grace_period: bool = False

    def to_dict(self) -> dict:
        return {
            "is_active": self.is_active,
            "status": self.status.value,
            "is_on_trial": self.is_on_trial,
            "in_grace_period": self.in_grace_period,
        }


def normalize_external_status(external_status: Optional[str]) -> Optional[NormalizedStatus]:
    """Map a processor status string; None when absent or unrecognized."""
    if not external_status or not isinstance(external_status, str):
        return None
    return _EXTERNAL_STATUS_MAP.get(external_status.strip().lower())


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_locally_suspended(company: Company) -> bool:
    return (not company.is_active) or company.plan_status == PlanStatus.SUSPENDED


def resolve(
    company: Union[Company, Mapping[str, Any]],
    external_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ResolvedSubscription:
    """Resolve status and access for a company.

    Rules, first match wins:
    1. no recognized external status: local flags decide; trialing while
       trial_ends_at is in the future, unpaid when locally suspended
    2. processor status is mapped to the normalized vocabulary
    Access is denied whenever the company is locally suspended or the
    normalized status is canceled, incomplete, incomplete_expired or unpaid.
    past_due keeps access (grace period) and is flagged.
    """
    if not isinstance(company, Company):
        company = Company.model_validate(company)
    now = _as_aware(now) or datetime.now(timezone.utc)

    suspended = is_locally_suspended(company)
    trial_ends_at = _as_aware(company.trial_ends_at)
    trial_running = trial_ends_at is not None and trial_ends_at > now

    status = normalize_external_status(external_status)
    if status is None:
        if suspended:
            status = NormalizedStatus.UNPAID
        elif trial_running:
            status = NormalizedStatus.TRIALING
        else:
            status = NormalizedStatus.ACTIVE

    is_active = not suspended and status not in DENIED_STATUSES
    return ResolvedSubscription(
        is_active=is_active,
        status=status,
        is_on_trial=status == NormalizedStatus.TRIALING,
        in_grace_period=is_active and status == NormalizedStatus.PAST_DUE,
    )


def resolve_company(company: Union[Company, Mapping[str, Any]], now: Optional[datetime] = None) -> ResolvedSubscription:
    """Resolve using the processor status last synced onto the company."""
    if not isinstance(company, Company):
        company = Company.model_validate(company)
    return resolve(company, company.subscription_status, now=now)
