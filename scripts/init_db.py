#!/usr/bin/env python3
"""
Create the TenderHub Bids tables and optionally seed demo accounts.

Usage:
    # Create tables (and back-fill collaboration columns on legacy databases)
    python scripts/init_db.py

    # Also create a demo authority and bidder organization with one user each
    python scripts/init_db.py --seed-demo

    # Print a session token for a seeded user (stored in Redis when available)
    python scripts/init_db.py --seed-demo --issue-session authority@example.com
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from sqlalchemy.orm import Session

from database import SessionLocal, OrganizationDB, UserDB, create_tables
from core.security import create_session

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEMO_ACCOUNTS = (
    ("Demo Procurement Authority", "authority@example.com", "Asha Authority", "AUTHORITY"),
    ("Demo Bidder Ltd", "bidder@example.com", "Ravi Bidder", "BIDDER"),
    (None, "assister@example.com", "Meera Assister", "ASSISTER"),
)


def seed_demo_data(db: Session) -> Dict[str, str]:
    """Create demo organizations and users if missing. Returns email -> user id."""
    created: Dict[str, str] = {}
    for org_name, email, name, role in DEMO_ACCOUNTS:
        user = db.query(UserDB).filter(UserDB.email == email).first()
        if user:
            created[email] = user.id
            continue

        organization_id = None
        if org_name:
            organization = db.query(OrganizationDB).filter(OrganizationDB.name == org_name).first()
            if not organization:
                organization = OrganizationDB(name=org_name)
                db.add(organization)
                db.flush()
            organization_id = organization.id

        user = UserDB(email=email, name=name, role=role, organization_id=organization_id)
        db.add(user)
        db.flush()
        created[email] = user.id
        logger.info(f"Seeded {role} user {email}")

    db.commit()
    return created


def main():
    parser = argparse.ArgumentParser(description="Create TenderHub Bids tables")
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Create demo authority, bidder and assister accounts",
    )
    parser.add_argument(
        "--issue-session",
        metavar="EMAIL",
        help="Print a session token for the given seeded user",
    )
    args = parser.parse_args()

    logger.info("Creating tables...")
    create_tables()
    logger.info("Tables ready")

    if not args.seed_demo and not args.issue_session:
        return

    db = SessionLocal()
    try:
        accounts = seed_demo_data(db) if args.seed_demo else {}
        if args.issue_session:
            user = db.query(UserDB).filter(UserDB.email == args.issue_session).first()
            if not user:
                logger.error(f"No user with email {args.issue_session}")
                sys.exit(1)
            logger.info(f"session_token for {user.email}: {create_session(user.id)}")
        elif accounts:
            logger.info(f"Demo accounts: {', '.join(sorted(accounts))}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
