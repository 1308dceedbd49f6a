"""Plan definitions — pricing tiers, add-ons, and provider price lookups."""

from dataclasses import dataclass

from reconciler.config import settings


@dataclass(frozen=True)
class Plan:
    """A subscription tier as sold to property owners."""

    slug: str
    display_name: str
    price_monthly_cents: int | None  # None = quoted on request
    price_yearly_cents: int | None
    max_properties: int | None  # None = unlimited
    trial_days: int
    max_leases: int | None = None
    max_tenants: int | None = None
    features: frozenset[str] = frozenset()

    def limit_for(self, resource: str) -> int | None:
        """Cap on a countable resource; None means unlimited."""
        if resource not in LIMITED_RESOURCES:
            raise ValueError(f"Unknown resource: {resource}")
        return getattr(self, f"max_{resource}")


@dataclass(frozen=True)
class Addon:
    """Recurring add-on billed next to the main plan."""

    slug: str
    display_name: str
    price_monthly_cents: int


LIMITED_RESOURCES = ("properties", "leases", "tenants")

_STANDARD = frozenset({"auto_reminders", "bank_reconciliation", "multi_users", "owner_reports"})
_FULL = _STANDARD | {"api_access"}

PLANS: dict[str, Plan] = {
    "gratuit": Plan("gratuit", "Gratuit", 0, 0, max_properties=1, trial_days=0, max_leases=1, max_tenants=2),
    "starter": Plan(
        "starter", "Starter", 900, 9000, max_properties=3, trial_days=30,
        max_leases=5, max_tenants=10, features=frozenset({"auto_reminders"}),
    ),
    "confort": Plan(
        "confort", "Confort", 3500, 33600, max_properties=10, trial_days=30,
        max_leases=25, max_tenants=40, features=_STANDARD,
    ),
    "pro": Plan("pro", "Pro", 6900, 66200, max_properties=50, trial_days=30, features=_FULL),
    "enterprise_s": Plan("enterprise_s", "Enterprise S", 24900, 239000, 100, 30, features=_FULL),
    "enterprise_m": Plan("enterprise_m", "Enterprise M", 34900, 335000, 200, 30, features=_FULL),
    "enterprise_l": Plan("enterprise_l", "Enterprise L", 49900, 479000, 500, 30, features=_FULL),
    "enterprise_xl": Plan("enterprise_xl", "Enterprise XL", 79900, 767000, None, 30, features=_FULL),
    "enterprise": Plan("enterprise", "Enterprise", None, None, max_properties=None, trial_days=0, features=_FULL),
}

ADDONS: dict[str, Addon] = {
    "pack_relances": Addon("pack_relances", "Pack relances avancées", 490),
    "export_comptable": Addon("export_comptable", "Export comptable", 490),
    "analytique_multi_biens": Addon("analytique_multi_biens", "Analytique multi-biens", 990),
}

DEFAULT_PLAN = "gratuit"
VALID_PLAN_SLUGS: set[str] = set(PLANS.keys())


def get_plan(slug: str) -> Plan | None:
    """Get a plan by slug. Returns None if unknown."""
    return PLANS.get(slug)


def get_plan_by_price(price_id: str | None, lookup_key: str | None = None) -> Plan | None:
    """Reverse lookup: Stripe price -> plan.

    Matches a configured price id first, then a price ``lookup_key`` equal to
    the plan slug (the convention used when products are created).
    """
    if price_id:
        for slug, configured in settings.plan_price_ids.items():
            if configured == price_id:
                return PLANS[slug]
    if lookup_key and lookup_key in PLANS:
        return PLANS[lookup_key]
    return None


def get_addon_by_price(price_id: str | None, lookup_key: str | None = None) -> Addon | None:
    """Reverse lookup: Stripe price -> add-on (by ``lookup_key``)."""
    if lookup_key and lookup_key in ADDONS:
        return ADDONS[lookup_key]
    return None


def monthly_value_cents(plan_slug: str | None, billing_cycle: str = "monthly") -> int:
    """MRR contribution of a plan; unknown or quoted plans contribute nothing."""
    plan = PLANS.get(plan_slug or "")
    if plan is None or plan.price_monthly_cents is None:
        return 0
    if billing_cycle == "yearly" and plan.price_yearly_cents:
        return round(plan.price_yearly_cents / 12)
    return plan.price_monthly_cents
