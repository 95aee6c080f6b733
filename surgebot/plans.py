from collections import namedtuple
from decimal import Decimal

from .errors import UnknownPlan
from .solana import sol_to_lamports

# Renewals are 10% off the base price
RENEWAL_DISCOUNT = Decimal("0.10")

# Plans and prices (SOL)
PLANS = {
    "trial": {"name": "Trial Plan", "price": Decimal("0.1"), "days": 1, "renewable": False},
    "monthly": {"name": "Monthly Plan", "price": Decimal("1"), "days": 30, "renewable": True},
    "six_month": {"name": "6-Month Plan", "price": Decimal("4.5"), "days": 180, "renewable": True},
    "yearly": {"name": "Yearly Plan", "price": Decimal("8"), "days": 365, "renewable": True},
    "lifetime": {"name": "Lifetime Plan", "price": Decimal("10"), "days": 36500, "renewable": True},
}

# Plan as it was when the user picked it; price is in lamports
PlanSnapshot = namedtuple("PlanSnapshot", ["key", "name", "price", "duration_days", "is_renewal"])


def renewal_price(plan_key):
    """Discounted renewal price in SOL, or None if the plan cannot be renewed"""
    plan = PLANS.get(plan_key)
    if not plan or not plan["renewable"]:
        return None
    return plan["price"] * (1 - RENEWAL_DISCOUNT)


def snapshot(plan_key, renewal=False):
    """Freeze the catalog entry for plan_key so later steps don't see catalog edits"""
    plan = PLANS.get(plan_key)
    if not plan:
        raise UnknownPlan()

    if renewal:
        price = renewal_price(plan_key)
        if price is None:
            raise UnknownPlan("❌ This plan cannot be renewed. Use /plans to pick a plan.")
        name = f"{plan['name']} (Renewal)"
    else:
        price = plan["price"]
        name = plan["name"]

    return PlanSnapshot(plan_key, name, sol_to_lamports(price), plan["days"], bool(renewal))
