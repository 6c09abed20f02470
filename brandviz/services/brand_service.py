"""
Servicio de marcas: alta, listado por usuario, edición, borrado lógico y control de acceso
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from ..domain.enums import MembershipStatus, Role
from ..domain.exceptions import BrandVizError, ForbiddenError, NotFoundError
from ..domain.models import BrandModel, MembershipModel
from ..infrastructure.database_manager import DatabaseManager
from ..utils.helpers import utcnow, safe_objectid

SUMMARY_FIELDS = [
    "_id", "name", "category", "region", "target_audience", "competitors",
    "use_case", "feature_list", "created_at", "updated_at",
]
EDITABLE_FIELDS = ["name", "category", "region", "use_case", "target_audience", "competitors", "feature_list"]


def merge_brand_summaries(owned: List[Dict[str, Any]], member: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Une marcas propias y compartidas sin repetir; si aparece en ambas gana el rol owner"""
    merged: Dict[str, Dict[str, Any]] = {}
    for brand in member + owned:
        key = str(brand["_id"])
        previous = merged.get(key)
        if previous is None or (brand["role"] == Role.OWNER.value and previous["role"] != Role.OWNER.value):
            merged[key] = brand
    return list(merged.values())


class BrandService:
    """Marcas y permisos por membresía"""

    def __init__(self, db_manager: DatabaseManager):
        self.brands_collection = db_manager.brands
        self.memberships_collection = db_manager.memberships
        self.users_collection = db_manager.users
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Lecturas
    # ------------------------------------------------------------------

    async def get_active_brand(self, brand_id: str) -> Optional[Dict[str, Any]]:
        brand_oid = safe_objectid(brand_id)
        if brand_oid is None:
            return None
        return await self.brands_collection.find_one({"_id": brand_oid, "deleted_at": None})

    async def list_user_brands(self, user_id: str) -> List[Dict[str, Any]]:
        """Marcas del usuario (propias y por membresía activa) con su rol"""
        user_oid = safe_objectid(user_id)
        projection = {field: 1 for field in SUMMARY_FIELDS}

        owned_docs = await self.brands_collection.find(
            {"owner_id": user_oid, "deleted_at": None}, projection
        ).to_list(length=None)
        owned = [{**doc, "role": Role.OWNER.value} for doc in owned_docs]

        memberships = await self.memberships_collection.find(
            {"user_id": user_oid, "status": MembershipStatus.ACTIVE.value},
            {"brand_id": 1, "role": 1},
        ).to_list(length=None)
        role_by_brand = {str(m["brand_id"]): m.get("role") for m in memberships}

        member: List[Dict[str, Any]] = []
        if memberships:
            member_docs = await self.brands_collection.find(
                {"_id": {"$in": [m["brand_id"] for m in memberships]}, "deleted_at": None}, projection
            ).to_list(length=None)
            member = [
                {**doc, "role": role_by_brand.get(str(doc["_id"])) or Role.VIEWER.value}
                for doc in member_docs
            ]

        return merge_brand_summaries(owned, member)

    async def get_brand_with_owner(self, brand_id: str) -> Dict[str, Any]:
        brand = await self.get_active_brand(brand_id)
        if not brand:
            raise BrandVizError("Brand does not exist!")

        owner = await self.users_collection.find_one(
            {"_id": brand.get("owner_id")}, {"_id": 1, "full_name": 1, "email": 1}
        )
        brand["owner"] = owner
        return brand

    async def get_user_role(self, brand: Dict[str, Any], user_id: str) -> Optional[str]:
        """owner si es dueño, el rol de su membresía activa, o None"""
        user_oid = safe_objectid(user_id)
        if user_oid is None:
            return None
        if brand.get("owner_id") == user_oid:
            return Role.OWNER.value

        membership = await self.memberships_collection.find_one({
            "brand_id": brand["_id"],
            "user_id": user_oid,
            "status": MembershipStatus.ACTIVE.value,
        })
        return membership.get("role") if membership else None

    async def ensure_can_read(self, brand_id: str, user_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: si la marca no existe
            ForbiddenError: si el usuario no es dueño ni miembro activo
        """
        brand = await self.get_active_brand(brand_id)
        if not brand:
            raise NotFoundError("Brand not found!")
        if await self.get_user_role(brand, user_id) is None:
            raise ForbiddenError("Access denied to this brand!")
        return brand

    async def can_manage(self, brand: Dict[str, Any], user_id: str) -> bool:
        return await self.get_user_role(brand, user_id) in Role.managers()

    async def ensure_can_manage(self, brand_id: str, user_id: str, message: str) -> Dict[str, Any]:
        brand = await self.ensure_can_read(brand_id, user_id)
        if not await self.can_manage(brand, user_id):
            raise ForbiddenError(message)
        return brand

    # ------------------------------------------------------------------
    # Escrituras
    # ------------------------------------------------------------------

    async def create_brand(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Crea la marca, la membresía owner y cierra el onboarding del usuario"""
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)})
        if not user:
            raise BrandVizError("User does not exist!")

        now = utcnow()
        brand = BrandModel(
            owner_id=user["_id"],
            name=data["name"],
            category=data.get("category"),
            region=data.get("region"),
            use_case=data.get("use_case"),
            target_audience=data.get("target_audience") or [],
            competitors=data.get("competitors") or [],
            feature_list=data.get("feature_list") or [],
            created_at=now,
            updated_at=now,
        )

        await self.users_collection.update_one(
            {"_id": user["_id"]},
            {"$set": {"current_onboarding_step": None, "updated_at": now}},
        )

        document = brand.to_dict()
        result = await self.brands_collection.insert_one(document)
        document["_id"] = result.inserted_id

        membership = MembershipModel(
            brand_id=result.inserted_id,
            user_id=user["_id"],
            role=Role.OWNER,
            status=MembershipStatus.ACTIVE,
            created_by=user["_id"],
            created_at=now,
            updated_at=now,
        )
        await self.memberships_collection.insert_one(membership.to_dict())

        self.logger.info(f"Brand {result.inserted_id} created by user {user_id}")
        return document

    async def update_brand(self, brand_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Actualiza los datos editables; solo owner o admin"""
        await self.ensure_can_manage(brand_id, user_id, "You do not have permission to edit this brand.")

        update = {key: value for key, value in data.items() if key in EDITABLE_FIELDS and value is not None}
        if not update:
            raise BrandVizError("No fields to update")
        if "name" in update and len(update["name"].strip()) < 2:
            raise BrandVizError("Brand name must be at least 2 characters")

        update["updated_at"] = utcnow()
        updated = await self.brands_collection.find_one_and_update(
            {"_id": safe_objectid(brand_id), "deleted_at": None},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        self.logger.info(f"Brand {brand_id} updated by user {user_id}")
        return updated

    async def delete_brand(self, brand_id: str, user_id: str) -> Dict[str, Any]:
        """Borrado lógico; solo el dueño puede eliminar la marca"""
        brand = await self.ensure_can_read(brand_id, user_id)
        if brand.get("owner_id") != safe_objectid(user_id):
            raise ForbiddenError("Only the brand owner can delete this brand.")

        deleted_at = utcnow()
        await self.brands_collection.update_one(
            {"_id": brand["_id"]},
            {"$set": {"deleted_at": deleted_at, "updated_at": deleted_at}},
        )
        self.logger.info(f"Brand {brand_id} deleted by owner {user_id}")
        return {"brandId": str(brand["_id"]), "deletedAt": deleted_at}
