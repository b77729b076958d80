"""
Idempotent profile seed for local development.
Creates a free-tier profile (gratuit, 2 properties) if none exists for the user id.

Usage (from backend/):
  python -m scripts.seed_profile [user_id] [email]
"""
import asyncio
import sys
from pathlib import Path

# Ensure backend root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

DEFAULT_USER_ID = "user_default"
DEFAULT_EMAIL = "user@example.com"


async def seed_profile(db, user_id: str, email: str) -> dict:
    from services.profile_store import ProfileStore

    store = ProfileStore(db)
    existing = await store.find_by_user_id(user_id)
    if existing:
        return {"action": "exists", "profile": existing}
    return {"action": "created", "profile": await store.create_profile(user_id, email)}


async def main():
    from database import get_db_context

    user_id = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_USER_ID
    email = sys.argv[2] if len(sys.argv) > 2 else DEFAULT_EMAIL
    async with get_db_context() as db:
        result = await seed_profile(db, user_id, email)
    profile = result["profile"]
    print(f"Seed: {result['action']} - {profile['user_id']} plan={profile.get('plan_type')}")


if __name__ == "__main__":
    asyncio.run(main())
