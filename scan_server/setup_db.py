# Setup Script for the Face Scan Server
# Run this script to initialize the database: python -m scan_server.setup_db

import argparse

from scan_server import config
from scan_server import logger
from scan_server.auth import create_test_user
from scan_server.database import init_database, test_connection, drop_all_tables


def setup_database(fresh_start=False):
    """Initialize database"""
    logger.log_lifecycle("SETUP", "Setting up database...")

    if not test_connection():
        logger.log_error("Database Setup Failed", Exception("Cannot connect to database"))
        return False

    if fresh_start:
        logger.log_warning("Fresh Start", {"action": "Dropping all tables"})
        drop_all_tables()

    if not init_database():
        return False

    logger.log_success("Database Ready", {"url": config.DATABASE_URL.split("@")[-1]})
    return True


def create_default_user():
    """Create default test user"""
    logger.log_lifecycle("SETUP", "Creating test user...")

    success, user_id = create_test_user()

    if success:
        logger.log_success("Test User Ready", {
            "email": "demo@example.com",
            "password": "test123",
            "user_id": user_id
        })

    return success


def main():
    parser = argparse.ArgumentParser(description="Initialize the face scan database")
    parser.add_argument("--fresh", action="store_true", help="Drop existing tables first")
    parser.add_argument("--demo-user", action="store_true", help="Create demo@example.com / test123")
    args = parser.parse_args()

    logger.log_lifecycle("SETUP START", "Face Scan Server")

    if not setup_database(fresh_start=args.fresh):
        print("\n❌ Setup failed!")
        return

    if args.demo_user:
        create_default_user()

    logger.log_lifecycle("SETUP COMPLETE", "")

    print("\n" + "=" * 80)
    print("✅ SETUP COMPLETE!")
    print("=" * 80)
    print("\nNext steps:")
    print("  1. Run server: uvicorn scan_server.main:app --reload --port 8000")
    print("  2. Access API docs: http://localhost:8000/docs")
    print("  3. Drive a scan: python -m scan_server.capture_client --images face.jpg")
    print("\n")


if __name__ == "__main__":
    main()
