"""Seed the default subscription plans for a local AfriConnect database."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select

from app.config import get_settings
from app.db import get_sessionmaker
from app.models import Currency, SubscriptionPlan

# Prices in subunits (santim / cents).
DEFAULT_PLANS = [
    {"slug": "starter", "name": "Starter", "currency": Currency.ETB, "price_monthly": 50000, "price_annual": 500000},
    {"slug": "growth", "name": "Growth", "currency": Currency.ETB, "price_monthly": 150000, "price_annual": 1500000},
    {"slug": "enterprise", "name": "Enterprise", "currency": Currency.USD, "price_monthly": 0, "price_annual": 0},
]


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    session = get_sessionmaker()()
    try:
        existing = set(session.scalars(select(SubscriptionPlan.slug)))
        created = []
        for plan in DEFAULT_PLANS:
            if plan["slug"] in existing:
                continue
            session.add(SubscriptionPlan(is_active=True, **plan))
            created.append(plan["slug"])
        session.commit()
        print(f"Created plans: {', '.join(created) or 'none'}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
