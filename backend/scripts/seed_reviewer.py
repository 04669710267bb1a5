#!/usr/bin/env python3
"""
Reviewer Seed Script
Creates a reviewer account for the refund adjudication engine.

Usage:
    python -m scripts.seed_reviewer <email> <full_name> <role> <password>

Roles: RPO, FINANCE, COMPLIANCE, LEGAL, OPERATIONS, MD_CEO, BOARD, OPERATOR

Example:
    python -m scripts.seed_reviewer rpo@example.com "Asha Rao" RPO securepassword123
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from refund_engine.database import SessionLocal, init_db
from refund_engine.models.db_models import ReviewerDB, ReviewerRole
from refund_engine.auth import hash_password


def create_reviewer(email: str, full_name: str, role: ReviewerRole, password: str) -> bool:
    """Create a reviewer, or reactivate an existing one with the given role."""
    init_db()

    db: Session = SessionLocal()
    try:
        existing = db.query(ReviewerDB).filter(ReviewerDB.email == email).first()
        if existing:
            existing.role = role
            existing.is_active = True
            db.commit()
            print(f"Updated existing reviewer '{email}' to role {role.value}.")
            return True

        reviewer = ReviewerDB(
            id=str(uuid4()),
            email=email,
            full_name=full_name,
            password_hash=hash_password(password),
            role=role,
            is_active=True,
        )
        db.add(reviewer)
        db.commit()

        print("Reviewer created successfully!")
        print(f"  Email: {email}")
        print(f"  Name: {full_name}")
        print(f"  Role: {role.value}")
        return True

    except Exception as e:
        print(f"Error creating reviewer: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) != 5:
        print(__doc__)
        sys.exit(1)

    email, full_name, role_name, password = sys.argv[1:5]

    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    try:
        role = ReviewerRole(role_name.upper())
    except ValueError:
        print(f"Error: Unknown role '{role_name}'.")
        sys.exit(1)

    success = create_reviewer(email, full_name, role, password)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
