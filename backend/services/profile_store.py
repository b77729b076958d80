"""Profile Store - persistence for user profiles (one document per user).

Lookups by user id and by Stripe customer id. Writes are targeted $set updates
so fields a caller does not mention are never clobbered.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pymongo.errors import PyMongoError
import logging

from models import UserProfile
from services.webhook_events import PersistenceError

logger = logging.getLogger(__name__)


class ProfileStore:
    def __init__(self, db):
        self.db = db

    async def find_by_user_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.db.profiles.find_one({"user_id": user_id}, {"_id": 0})
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e

    async def find_by_customer_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        if not customer_id:
            return None
        try:
            return await self.db.profiles.find_one({"stripe_customer_id": customer_id}, {"_id": 0})
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e

    async def update_fields(self, user_id: str, fields: Dict[str, Any], upsert: bool = False) -> bool:
        """
        Set the given fields on a profile.

        Returns:
            True if a profile was matched (or created with upsert).
        """
        now = datetime.now(timezone.utc)
        update = {"$set": {**fields, "updated_at": now}}
        if upsert:
            update["$setOnInsert"] = {"created_at": now}
        try:
            result = await self.db.profiles.update_one({"user_id": user_id}, update, upsert=upsert)
        except PyMongoError as e:
            logger.error("PROFILE_UPDATE_FAILED user_id=%s fields=%s error=%s", user_id, sorted(fields), e)
            raise PersistenceError(str(e)) from e
        matched = bool(result.matched_count or getattr(result, "upserted_id", None))
        if not matched:
            logger.warning("PROFILE_UPDATE_NO_MATCH user_id=%s", user_id)
        return matched

    async def create_profile(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        """Signup defaults: gratuit, 2 properties, no Stripe customer."""
        doc = UserProfile(user_id=user_id, email=email).model_dump()
        try:
            await self.db.profiles.insert_one(doc)
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e
        doc.pop("_id", None)
        logger.info(f"Profile created for user {user_id}")
        return doc

    async def count_properties(self, user_id: str) -> int:
        try:
            return await self.db.properties.count_documents({"user_id": user_id})
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e
