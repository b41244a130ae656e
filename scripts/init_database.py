# scripts/init_database.py

"""
Database initialization script.
Creates the registry schema and ensures the blob directory exists.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app  # noqa: E402
from registry_app.models import db  # noqa: E402
from registry_app.services.blob_storage import resolve_blob_directory  # noqa: E402


def init_database():
    """Create all tables and the blob store directory"""
    with app.app_context():
        print("Creating database tables...")
        db.create_all()
        print("Tables created: " + ", ".join(sorted(db.metadata.tables)))

        blob_dir = resolve_blob_directory(app)
        blob_dir.mkdir(parents=True, exist_ok=True)
        print(f"Blob directory ready: {blob_dir}")

        print("\nDatabase initialization complete!")
        print("\nNext steps:")
        print("  1. Simulate a snapshot: flask registry simulate --file snapshot.csv")
        print("  2. Apply it: flask registry apply --file snapshot.csv --comment 'Initial load'")


if __name__ == "__main__":
    init_database()
