# src/subscription/catalog.py
import logging
from sqlalchemy.orm import Session
from subscription.models import Plan, Package

logger = logging.getLogger(__name__)

# Prices in UZS (major units)
PLANS = [
    {"name": "free", "display_name": "Free", "price": 0, "minutes_per_cycle": 60,
     "description": "Try the service with 60 free minutes per month", "sort_order": 0},
    {"name": "starter", "display_name": "Starter", "price": 99000, "minutes_per_cycle": 300,
     "description": "5 hours of video processing per month", "sort_order": 1},
    {"name": "pro", "display_name": "Pro", "price": 189000, "minutes_per_cycle": 900,
     "description": "15 hours of video processing per month", "sort_order": 2},
    {"name": "business", "display_name": "Business", "price": 349000, "minutes_per_cycle": 2400,
     "description": "40 hours of video processing per month", "sort_order": 3},
]

PACKAGES = [
    {"name": "1hr", "display_name": "1 Hour", "price": 36000, "minutes": 60,
     "description": "Add 1 hour of processing time", "sort_order": 0},
    {"name": "5hr", "display_name": "5 Hours", "price": 229000, "minutes": 300,
     "description": "Add 5 hours of processing time (save 37%)", "sort_order": 1},
    {"name": "10hr", "display_name": "10 Hours", "price": 289000, "minutes": 600,
     "description": "Add 10 hours of processing time (save 52%)", "sort_order": 2},
]


def seed_catalog(db: Session) -> int:
    """Insert catalog rows that are missing by name. Existing rows are left as they are."""
    existing_plans = {name for (name,) in db.query(Plan.name).all()}
    existing_packages = {name for (name,) in db.query(Package.name).all()}

    added = 0
    for plan in PLANS:
        if plan["name"] not in existing_plans:
            db.add(Plan(is_active=True, **plan))
            added += 1
    for pkg in PACKAGES:
        if pkg["name"] not in existing_packages:
            db.add(Package(is_active=True, **pkg))
            added += 1
    db.commit()
    if added:
        logger.info(f"Seeded {added} catalog rows")
    return added
