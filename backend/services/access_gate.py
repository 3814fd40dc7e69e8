"""Access Gate - per-request allow/deny decision for company-scoped routes.

Reads only the persisted company document; the processor is never called on
this path. Processor status reaches the company asynchronously through the
webhook sync.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from services.company_service import get_company
from services.subscription_status import ResolvedSubscription, resolve_company

logger = logging.getLogger(__name__)

# Relative when FRONTEND_URL is unset
SUBSCRIPTION_REDIRECT_URL = os.getenv("FRONTEND_URL", "").rstrip("/") + "/subscription"


@dataclass(frozen=True)
class AccessDecision:
    company_id: int
    allowed: bool
    subscription: ResolvedSubscription
    redirect: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "allowed": self.allowed,
            "redirect": self.redirect,
            **self.subscription.to_dict(),
        }


class AccessGate:

    async def evaluate(self, company_id: int) -> AccessDecision:
        """Raises CompanyNotFoundError for an unknown company; denial is a normal result."""
        company = await get_company(company_id)
        resolved = resolve_company(company)
        if resolved.is_active:
            return AccessDecision(company_id=company_id, allowed=True, subscription=resolved)

        logger.info(
            "ACCESS_DENIED company_id=%s status=%s plan_status=%s is_active=%s",
            company_id, resolved.status.value, company.plan_status.value, company.is_active,
        )
        return AccessDecision(
            company_id=company_id,
            allowed=False,
            subscription=resolved,
            redirect=SUBSCRIPTION_REDIRECT_URL,
        )

    async def can_access(self, company_id: int) -> bool:
        decision = await self.evaluate(company_id)
        return decision.allowed


# Singleton instance
access_gate = AccessGate()
