"""
Locks distribuidos para jobs periódicos.
Cada lock es un documento cuyo _id es el nombre del lock y expira en expires_at.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..infrastructure.database_manager import DatabaseManager
from ..utils.helpers import utcnow, ensure_utc

DEFAULT_LOCK_DURATION = timedelta(minutes=5)


class CronLockService:
    """Adquiere, libera, consulta y extiende locks con expiración"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.locks_collection = db_manager.cron_locks
        self.logger = logging.getLogger(__name__)

    async def acquire_lock(self, lock_name: str, duration: timedelta = DEFAULT_LOCK_DURATION) -> Optional[str]:
        """
        Toma el lock si está libre o vencido.

        Returns:
            El id de instancia dueño del lock, o None si otro lo tiene
        """
        instance_id = str(uuid.uuid4())
        now = utcnow()
        expires_at = now + duration

        try:
            result = await self.locks_collection.find_one_and_update(
                {
                    "_id": lock_name,
                    "$or": [
                        {"expires_at": {"$lt": now}},
                        {"expires_at": {"$exists": False}},
                    ],
                },
                {"$set": {"locked_at": now, "locked_by": instance_id, "expires_at": expires_at}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # El upsert choca con un lock vigente de otra instancia
            self.logger.info(f'Lock "{lock_name}" already held by another instance')
            return None

        if result and result.get("locked_by") == instance_id:
            self.logger.info(f'Acquired lock "{lock_name}" with instance {instance_id}, expires at {expires_at}')
            return instance_id

        self.logger.info(f'Failed to acquire lock "{lock_name}" - already held by another instance')
        return None

    async def release_lock(self, lock_name: str, instance_id: str) -> bool:
        result = await self.locks_collection.find_one_and_delete({"_id": lock_name, "locked_by": instance_id})
        if result:
            self.logger.info(f'Released lock "{lock_name}" held by instance {instance_id}')
            return True
        self.logger.info(f'Could not release lock "{lock_name}" - not held by instance {instance_id}')
        return False

    async def check_lock(self, lock_name: str) -> Dict[str, Any]:
        lock = await self.locks_collection.find_one({"_id": lock_name})
        if not lock or not lock.get("expires_at") or ensure_utc(lock["expires_at"]) < utcnow():
            return {"is_locked": False}
        return {
            "is_locked": True,
            "locked_by": lock.get("locked_by"),
            "locked_at": lock.get("locked_at"),
            "expires_at": lock.get("expires_at"),
        }

    async def extend_lock(self, lock_name: str, instance_id: str,
                          extension: timedelta = DEFAULT_LOCK_DURATION) -> bool:
        """Solo extiende un lock propio que todavía no venció"""
        now = utcnow()
        new_expires_at = now + extension
        result = await self.locks_collection.find_one_and_update(
            {"_id": lock_name, "locked_by": instance_id, "expires_at": {"$gt": now}},
            {"$set": {"expires_at": new_expires_at}},
            return_document=ReturnDocument.AFTER,
        )
        if result:
            self.logger.info(f'Extended lock "{lock_name}" for instance {instance_id} until {new_expires_at}')
            return True
        self.logger.info(f'Could not extend lock "{lock_name}" - not held by instance {instance_id} or expired')
        return False
