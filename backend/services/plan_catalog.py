"""Plan Catalog - billing plans as stored in the plans collection.

This is the source for:
- Monthly and annual pricing
- Professional seat limits
- Feature permissions
- Stripe price references (monthly and annual)

Plans are read fresh from the database on every call; nothing is cached
between requests. Once a plan is referenced by a subscription only its
Stripe price reference may be edited (update_stripe_price_id).
"""
import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import database
from models import BillingPeriod, FeatureFlag, Plan
from services.billing_errors import PlanNotFoundError, ValidationError
from services.installments import installment_options

logger = logging.getLogger(__name__)

STRIPE_PRICE_ID_PATTERN = re.compile(r"^price_[A-Za-z0-9_]+$")

# Applied when a plan has no usable permissions stored
DEFAULT_PERMISSIONS = list(FeatureFlag)

# Legacy camelCase permission keys
_LEGACY_PERMISSION_KEYS = {
    "pointsProgram": FeatureFlag.POINTS_PROGRAM,
}

# Stored field per billing period
PRICE_ID_FIELDS = {
    BillingPeriod.MONTHLY: "stripe_price_id",
    BillingPeriod.ANNUAL: "stripe_annual_price_id",
}


def _flag(key: str) -> Optional[FeatureFlag]:
    if key in _LEGACY_PERMISSION_KEYS:
        return _LEGACY_PERMISSION_KEYS[key]
    try:
        return FeatureFlag(key)
    except ValueError:
        return None


def parse_permissions(raw: Any) -> List[FeatureFlag]:
    """Accept a list of flags, a {flag: bool} mapping, or either as JSON text."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable plan permissions, using defaults")
            return list(DEFAULT_PERMISSIONS)

    if isinstance(raw, dict):
        keys = [k for k, enabled in raw.items() if enabled]
    elif isinstance(raw, (list, tuple, set)):
        keys = list(raw)
    else:
        return list(DEFAULT_PERMISSIONS)

    flags = []
    for key in keys:
        flag = _flag(str(key))
        if flag is not None and flag not in flags:
            flags.append(flag)
    return flags


def plan_from_document(doc: Dict[str, Any]) -> Plan:
    data = dict(doc)
    data.pop("_id", None)
    data["permissions"] = parse_permissions(data.get("permissions"))
    return Plan.model_validate(data)


def validate_stripe_price_id(price_id: Optional[str]) -> str:
    value = (price_id or "").strip()
    if not STRIPE_PRICE_ID_PATTERN.match(value):
        raise ValidationError(
            f"Invalid Stripe price id '{price_id}': must start with 'price_'",
            error_code="INVALID_PRICE_ID",
        )
    return value


class PlanCatalog:
    """Read access to plans plus the admin price-reference edit."""

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        db = database.get_db()
        doc = await db.plans.find_one({"plan_id": plan_id}, {"_id": 0})
        return plan_from_document(doc) if doc else None

    async def get_active_plan(self, plan_id: int) -> Plan:
        plan = await self.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundError(f"Plan {plan_id} not found or inactive")
        return plan

    async def list_plans(self, active_only: bool = True) -> List[Plan]:
        db = database.get_db()
        query = {"is_active": True} if active_only else {}
        docs = await db.plans.find(query, {"_id": 0}).sort("plan_id", 1).to_list(100)
        return [plan_from_document(d) for d in docs]

    def price_for(self, plan: Plan, period: BillingPeriod) -> Decimal:
        if period == BillingPeriod.ANNUAL:
            return plan.annual_price if plan.annual_price is not None else plan.price * 12
        return plan.price

    def price_id_for(self, plan: Plan, period: BillingPeriod) -> Optional[str]:
        if period == BillingPeriod.ANNUAL:
            return plan.stripe_annual_price_id
        return plan.stripe_price_id

    def has_feature(self, plan: Plan, flag: FeatureFlag) -> bool:
        return flag in plan.permissions

    def professionals_limit(self, plan: Plan) -> int:
        return max(plan.max_professionals or 1, 1)

    async def update_stripe_price_id(
        self,
        plan_id: int,
        price_id: str,
        period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> Plan:
        """Set the Stripe price reference; the only admin edit allowed on a plan."""
        value = validate_stripe_price_id(price_id)
        db = database.get_db()
        field = PRICE_ID_FIELDS[period]

        doc = await db.plans.find_one_and_update(
            {"plan_id": plan_id},
            {"$set": {field: value}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise PlanNotFoundError(f"Plan {plan_id} not found")

        logger.info("PLAN_PRICE_ID_UPDATED plan_id=%s field=%s price_id=%s", plan_id, field, value)
        return plan_from_document(doc)

    def to_public_dict(self, plan: Plan) -> Dict[str, Any]:
        annual = self.price_for(plan, BillingPeriod.ANNUAL)
        return {
            "plan_id": plan.plan_id,
            "name": plan.name,
            "price": str(plan.price),
            "annual_price": str(annual),
            "max_professionals": self.professionals_limit(plan),
            "free_days": plan.free_days,
            "permissions": [f.value for f in plan.permissions],
            "annual_installments": [b.to_dict() for b in installment_options(annual)],
        }

    def to_admin_dict(self, plan: Plan) -> Dict[str, Any]:
        data = self.to_public_dict(plan)
        data.update({
            "is_active": plan.is_active,
            "stripe_product_id": plan.stripe_product_id,
            "stripe_price_id": plan.stripe_price_id,
            "stripe_annual_price_id": plan.stripe_annual_price_id,
        })
        return data


# Singleton instance
plan_catalog = PlanCatalog()
