"""
Servicio de planes de suscripción
"""

import logging
from typing import Any, Dict, List

from pymongo import ReturnDocument

from ..domain.exceptions import BrandVizError
from ..domain.models import PlanModel
from ..infrastructure.database_manager import DatabaseManager
from ..utils.helpers import utcnow, safe_objectid

EDITABLE_FIELDS = ["plan_id", "name", "description", "price", "max_brands", "ai_models_supported", "features"]


class PlanService:
    """CRUD de planes"""

    def __init__(self, db_manager: DatabaseManager):
        self.plans_collection = db_manager.plans
        self.logger = logging.getLogger(__name__)

    async def list_plans(self) -> List[Dict[str, Any]]:
        return await self.plans_collection.find().sort("created_at", 1).to_list(length=None)

    async def create_plan(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        plan = PlanModel(
            plan_id=data["plan_id"],
            name=data["name"],
            description=data.get("description", ""),
            price=data.get("price", 0),
            max_brands=data.get("max_brands"),
            ai_models_supported=data.get("ai_models_supported"),
            features=data.get("features") or [],
            created_at=now,
            updated_at=now,
        )
        document = plan.to_dict()
        result = await self.plans_collection.insert_one(document)
        document["_id"] = result.inserted_id
        self.logger.info(f"Plan created: {plan.plan_id}")
        return document

    async def update_plan(self, plan_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        plan_oid = safe_objectid(plan_id)
        if plan_oid is None:
            raise BrandVizError("Invalid or missing planId!")

        update = {key: value for key, value in data.items() if key in EDITABLE_FIELDS}
        update["updated_at"] = utcnow()
        updated = await self.plans_collection.find_one_and_update(
            {"_id": plan_oid}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise BrandVizError("Plan does not exist!")
        return updated
