#!/usr/bin/env python3
"""
Admin User Seed Script
Creates an admin account for the registration admin panel.
Sign-in happens on the registration front end; this only grants the role.

Usage:
    python -m scripts.seed_admin <email> <name>

Example:
    python -m scripts.seed_admin admin@agneepath.co.in "Sports Office"
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from regsync.database import SessionLocal, engine, Base
from regsync.models.db_models import UserDB


def create_admin_user(email: str, name: str, db: Session = None) -> bool:
    """Create an admin user, or promote an existing account with that email."""
    owns_session = db is None
    if owns_session:
        # Ensure tables exist
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()

    try:
        existing = db.query(UserDB).filter(UserDB.email == email).first()

        if existing:
            if existing.role == "admin":
                print(f"Error: Email '{email}' already exists.")
                print("This user is already an admin.")
                return False
            existing.role = "admin"
            db.commit()
            print(f"Upgraded existing user '{email}' to admin role.")
            return True

        admin_user = UserDB(
            id=str(uuid4()),
            email=email,
            name=name,
            role="admin",
            email_verified=True,
        )

        db.add(admin_user)
        db.commit()

        print("Admin user created successfully!")
        print(f"  Email: {email}")
        print(f"  Name: {name}")
        print("  Role: admin")
        return True

    except Exception as e:
        print(f"Error creating admin user: {e}")
        db.rollback()
        return False
    finally:
        if owns_session:
            db.close()


def main():
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    name = sys.argv[2]

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    success = create_admin_user(email, name)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
