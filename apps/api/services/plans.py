"""Subscription plan catalog: tier economics and feature gating."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from config import stripe_price_setting


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    GROWTH = "growth"
    AGENCY = "agency"


class Feature(str, Enum):
    WORKFLOW_GENERATION = "workflow_generation"
    CODE_GENERATION = "code_generation"
    WORKFLOW_CONVERSION = "workflow_conversion"
    WORKFLOW_DEBUGGING = "workflow_debugging"
    TEMPLATES_LIMITED = "templates_limited"
    TEMPLATES = "templates"
    HISTORY = "history"
    HISTORY_AUTO_SAVE = "history_auto_save"
    TEMPLATE_FOLDERS = "template_folders"
    API_ACCESS = "api_access"
    BATCH_OPERATIONS = "batch_operations"
    WORKFLOW_SETS = "workflow_sets"
    ADVANCED_EXPORT = "advanced_export"
    AGENCY_DASHBOARD = "agency_dashboard"
    TEAM_ACCESS = "team_access"
    CLIENT_WORKSPACES = "client_workspaces"
    USAGE_ANALYTICS = "usage_analytics"
    CUSTOM_BRANDING = "custom_branding"
    PRIORITY_QUEUE = "priority_queue"
    CREDIT_DELEGATION = "credit_delegation"
    N8N_PUSH = "n8n_push"
    N8N_MONITORING = "n8n_monitoring"


# Ascending order used for upgrade lookups.
TIER_ORDER: Tuple[Tier, ...] = (Tier.FREE, Tier.STARTER, Tier.PRO, Tier.GROWTH, Tier.AGENCY)
PAID_TIERS: Tuple[Tier, ...] = (Tier.STARTER, Tier.PRO, Tier.GROWTH, Tier.AGENCY)
BILLING_INTERVALS: Tuple[str, ...] = ("monthly", "yearly")

# Renewal keeps at most this share of the monthly allotment as rollover.
ROLLOVER_CAP_RATIO = 0.5


@dataclass(frozen=True)
class PlanDefinition:
    id: Tier
    display_name: str
    price_monthly: int  # USD
    price_yearly: int  # USD
    monthly_credits: int
    max_rollover: int
    monthly_batch_credits: int
    max_workflows_per_batch: int
    allowed_features: FrozenSet[Feature]
    features: Tuple[str, ...] = ()
    coming_soon_features: Tuple[str, ...] = ()
    includes_seats: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "display_name": self.display_name,
            "price": {"monthly": self.price_monthly, "yearly": self.price_yearly},
            "credits": {"monthly": self.monthly_credits, "rollover_max": self.max_rollover},
            "batch_credits": {
                "monthly": self.monthly_batch_credits,
                "max_workflows_per_set": self.max_workflows_per_batch,
            },
            "features": list(self.features),
            "coming_soon_features": list(self.coming_soon_features),
            "allowed_features": sorted(feature.value for feature in self.allowed_features),
        }


_FREE_FEATURES = frozenset({Feature.WORKFLOW_GENERATION})
_STARTER_FEATURES = _FREE_FEATURES | {
    Feature.CODE_GENERATION,
    Feature.HISTORY,
    Feature.TEMPLATES_LIMITED,
}
_PRO_FEATURES = (_STARTER_FEATURES - {Feature.TEMPLATES_LIMITED}) | {
    Feature.WORKFLOW_CONVERSION,
    Feature.WORKFLOW_DEBUGGING,
    Feature.TEMPLATES,
    Feature.HISTORY_AUTO_SAVE,
    Feature.TEMPLATE_FOLDERS,
    Feature.API_ACCESS,
    Feature.N8N_PUSH,
}
_GROWTH_FEATURES = _PRO_FEATURES | {
    Feature.BATCH_OPERATIONS,
    Feature.WORKFLOW_SETS,
    Feature.ADVANCED_EXPORT,
    Feature.N8N_MONITORING,
}
_AGENCY_FEATURES = _GROWTH_FEATURES | {
    Feature.AGENCY_DASHBOARD,
    Feature.TEAM_ACCESS,
    Feature.CLIENT_WORKSPACES,
    Feature.USAGE_ANALYTICS,
    Feature.CUSTOM_BRANDING,
    Feature.PRIORITY_QUEUE,
    Feature.CREDIT_DELEGATION,
}


PLANS: Dict[Tier, PlanDefinition] = {
    Tier.FREE: PlanDefinition(
        id=Tier.FREE,
        display_name="Free",
        price_monthly=0,
        price_yearly=0,
        monthly_credits=5,
        max_rollover=0,
        monthly_batch_credits=0,
        max_workflows_per_batch=0,
        allowed_features=_FREE_FEATURES,
        features=(
            "5 credits per month",
            "n8n workflow generation",
            "Download workflow JSON",
            "Community support",
        ),
    ),
    Tier.STARTER: PlanDefinition(
        id=Tier.STARTER,
        display_name="Starter",
        price_monthly=19,
        price_yearly=180,
        monthly_credits=25,
        max_rollover=0,
        monthly_batch_credits=0,
        max_workflows_per_batch=0,
        allowed_features=_STARTER_FEATURES,
        features=(
            "25 credits per month",
            "Everything in Free",
            "n8n Code Generator",
            "Save to History (manual)",
            "Access to 3 default templates",
            "Basic email support",
        ),
    ),
    Tier.PRO: PlanDefinition(
        id=Tier.PRO,
        display_name="Pro",
        price_monthly=49,
        price_yearly=470,
        monthly_credits=100,
        max_rollover=0,
        monthly_batch_credits=0,
        max_workflows_per_batch=0,
        allowed_features=_PRO_FEATURES,
        features=(
            "100 credits per month",
            "Everything in Starter",
            "Auto-save to History",
            "AI debugging & error fixes",
            "Push workflows directly to n8n",
            "ALL default templates (full library)",
            "Template folders & organization",
            "API access (programmatic generation)",
            "Priority email support",
        ),
        coming_soon_features=("Workflow conversion (n8n <-> Make <-> Zapier)",),
    ),
    Tier.GROWTH: PlanDefinition(
        id=Tier.GROWTH,
        display_name="Growth",
        price_monthly=99,
        price_yearly=950,
        monthly_credits=250,
        max_rollover=0,
        monthly_batch_credits=10,
        max_workflows_per_batch=5,
        allowed_features=_GROWTH_FEATURES,
        features=(
            "250 credits per month",
            "10 batch credits per month",
            "Everything in Pro",
            "Monitor workflow executions in n8n",
            "Batch workflow generation (up to 5 per set)",
            "Export workflow sets as packages",
            "Priority email support",
        ),
        coming_soon_features=("Workflow Set Marketplace", "Advanced export options"),
    ),
    Tier.AGENCY: PlanDefinition(
        id=Tier.AGENCY,
        display_name="Agency",
        price_monthly=499,
        price_yearly=4790,
        monthly_credits=750,
        max_rollover=0,
        monthly_batch_credits=50,
        max_workflows_per_batch=5,
        allowed_features=_AGENCY_FEATURES,
        features=(
            "750 credits per month (shared pool)",
            "50 batch credits per month",
            "Everything in Growth",
            "2 team seats included",
            "Dedicated account manager",
        ),
        coming_soon_features=(
            "Client workspaces & projects",
            "Usage analytics & reporting per user",
            "Custom branding on exports",
        ),
        includes_seats=2,
    ),
}

if set(PLANS) != set(Tier) or any(key is not plan.id for key, plan in PLANS.items()):
    raise RuntimeError("Plan catalog must define exactly one plan per tier")
if set(Feature) - set().union(*(plan.allowed_features for plan in PLANS.values())):
    raise RuntimeError("Every feature must be granted by at least one plan")


def _coerce_tier(tier: Union[Tier, str, None]) -> Optional[Tier]:
    if isinstance(tier, Tier):
        return tier
    try:
        return Tier(str(tier or "").strip().lower())
    except ValueError:
        return None


def _coerce_feature(feature: Union[Feature, str, None]) -> Optional[Feature]:
    if isinstance(feature, Feature):
        return feature
    try:
        return Feature(str(feature or "").strip())
    except ValueError:
        return None


def get_plan(tier: Union[Tier, str, None]) -> PlanDefinition:
    """Return the plan for a tier, falling back to the free plan for unknown input."""
    resolved = _coerce_tier(tier)
    return PLANS[resolved] if resolved is not None else PLANS[Tier.FREE]


def is_paid_tier(tier: Union[Tier, str, None]) -> bool:
    return _coerce_tier(tier) in PAID_TIERS


def can_access_feature(tier: Union[Tier, str, None], feature: Union[Feature, str]) -> bool:
    resolved = _coerce_feature(feature)
    if resolved is None:
        return False
    return resolved in get_plan(tier).allowed_features


def minimum_plan_for_feature(feature: Union[Feature, str]) -> PlanDefinition:
    """Cheapest plan that grants a feature.

    Features no plan grants resolve to Starter, so callers should not read the
    result as a promise that the feature exists.
    """
    resolved = _coerce_feature(feature)
    if resolved is not None:
        for tier in TIER_ORDER:
            plan = PLANS[tier]
            if resolved in plan.allowed_features:
                return plan
    return PLANS[Tier.STARTER]


def get_upgrade_message(tier: Union[Tier, str, None], feature: Union[Feature, str]) -> str:
    if can_access_feature(tier, feature):
        return ""
    resolved = _coerce_feature(feature)
    if resolved is None:
        return "Upgrade to access this feature"
    target = minimum_plan_for_feature(resolved)
    label = resolved.value.replace("_", " ")
    return f"Upgrade to {target.display_name} to unlock {label}"


def monthly_credits(tier: Union[Tier, str, None]) -> int:
    return get_plan(tier).monthly_credits


def max_rollover(tier: Union[Tier, str, None]) -> int:
    return get_plan(tier).max_rollover


def monthly_batch_credits(tier: Union[Tier, str, None]) -> int:
    return get_plan(tier).monthly_batch_credits


def max_workflows_per_batch(tier: Union[Tier, str, None]) -> int:
    return get_plan(tier).max_workflows_per_batch


def has_batch_credits_access(tier: Union[Tier, str, None]) -> bool:
    return monthly_batch_credits(tier) > 0


def has_auto_save_history(tier: Union[Tier, str, None]) -> bool:
    return can_access_feature(tier, Feature.HISTORY_AUTO_SAVE)


def renewal_credits(tier: Union[Tier, str, None], current_balance: int) -> Tuple[int, int]:
    """Return (new_balance, rollover) for a billing-cycle renewal.

    new_balance = M + min(B, floor(M * 0.5)); anything above the cap is forfeited.
    """
    allotment = monthly_credits(tier)
    cap = int(allotment * ROLLOVER_CAP_RATIO)
    rollover = min(max(int(current_balance), 0), cap)
    return allotment + rollover, rollover


def stripe_price_id(tier: Union[Tier, str, None], billing_interval: str) -> Optional[str]:
    resolved = _coerce_tier(tier)
    if resolved not in PAID_TIERS or billing_interval not in BILLING_INTERVALS:
        return None
    return stripe_price_setting(resolved.value, billing_interval)


def plan_for_stripe_price(price_id: Optional[str]) -> Optional[PlanDefinition]:
    """Reverse lookup of a configured Stripe price id."""
    if not price_id:
        return None
    for tier in PAID_TIERS:
        for interval in BILLING_INTERVALS:
            if stripe_price_id(tier, interval) == price_id:
                return PLANS[tier]
    return None


def plan_catalog() -> List[Dict[str, Any]]:
    return [PLANS[tier].to_dict() for tier in TIER_ORDER]


# Credits charged per operation. Template downloads are free.
CREDIT_COSTS: Dict[str, int] = {
    "workflow_generation": 1,
    "workflow_debug": 1,
    "template_download": 0,
}


@dataclass(frozen=True)
class TopUpPack:
    """One-off credit pack sold on top of a subscription."""

    id: str
    display_name: str
    credits: int
    price: float  # USD
    cost_per_credit: float
    discount_percent: int
    recommended: bool = False
    badge: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "credits": self.credits,
            "price": self.price,
            "cost_per_credit": self.cost_per_credit,
            "discount_percent": self.discount_percent,
            "recommended": self.recommended,
            "badge": self.badge,
        }


CREDIT_TOP_UP_PACKS: Tuple[TopUpPack, ...] = (
    TopUpPack("starter", "Starter", credits=10, price=5.00, cost_per_credit=0.50, discount_percent=0),
    TopUpPack("standard", "Standard", credits=25, price=11.00, cost_per_credit=0.44, discount_percent=12),
    TopUpPack(
        "plus", "Plus", credits=50, price=20.00, cost_per_credit=0.40, discount_percent=20, recommended=True
    ),
    TopUpPack(
        "bulk", "Bulk", credits=100, price=35.00, cost_per_credit=0.35, discount_percent=30, badge="BEST VALUE"
    ),
)

_TOP_UP_PACKS_BY_ID: Dict[str, TopUpPack] = {pack.id: pack for pack in CREDIT_TOP_UP_PACKS}
_RECOMMENDED_TOP_UP = {Tier.PRO: "standard", Tier.AGENCY: "bulk"}


def credit_cost(operation: str) -> int:
    if operation not in CREDIT_COSTS:
        raise ValueError(f"Unknown credit operation: {operation}")
    return CREDIT_COSTS[operation]


def get_top_up_pack(pack_id: Optional[str]) -> Optional[TopUpPack]:
    return _TOP_UP_PACKS_BY_ID.get(pack_id or "")


def recommended_top_up_pack(tier: Union[Tier, str, None]) -> TopUpPack:
    """Pro users are pointed at Standard, Agency at Bulk, everyone else at Starter."""
    return _TOP_UP_PACKS_BY_ID[_RECOMMENDED_TOP_UP.get(_coerce_tier(tier), "starter")]


def top_up_catalog() -> List[Dict[str, Any]]:
    return [pack.to_dict() for pack in CREDIT_TOP_UP_PACKS]
