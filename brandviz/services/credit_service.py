"""
Servicio de créditos: saldo del usuario y ledger de movimientos
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..domain.enums import AIModel, TransactionType
from ..domain.exceptions import InsufficientCreditsError, NotFoundError
from ..domain.models import CreditTransactionModel
from ..infrastructure.database_manager import DatabaseManager
from ..utils.helpers import utcnow, safe_objectid

CREDITS_PER_MODEL = 10
FREE_CREDITS = 50
ALL_STAGES_LABEL = "All funnel stages (TOFU, MOFU, BOFU, EVFU)"


def calculate_credits_needed(models: List[str], credits_per_model: int = CREDITS_PER_MODEL) -> int:
    """Cada modelo corre todas las etapas del funnel"""
    return len(models) * credits_per_model


def validate_analysis_request(models: List[str], credits_per_model: int = CREDITS_PER_MODEL) -> Dict[str, Any]:
    """
    Valida los modelos pedidos y arma el desglose de créditos.

    Returns:
        {"is_valid", "credits_needed", "breakdown", "errors"}
    """
    valid_models = AIModel.values()
    errors = []
    invalid = [model for model in models if model not in valid_models]
    if invalid:
        errors.append(f"Invalid models: {', '.join(invalid)}")

    breakdown = [
        {"model": model, "credits": credits_per_model, "stages": ALL_STAGES_LABEL}
        for model in models if model in valid_models
    ]
    return {
        "is_valid": not errors,
        "credits_needed": sum(item["credits"] for item in breakdown),
        "breakdown": breakdown,
        "errors": errors or None,
    }


def build_history_query(user_id: str, filters: Optional[Dict[str, Optional[str]]] = None) -> Dict[str, Any]:
    """Filtro por tipo y rango de fechas; end_date incluye el día completo"""
    query: Dict[str, Any] = {"user_id": safe_objectid(user_id)}
    filters = filters or {}

    if filters.get("type"):
        query["type"] = filters["type"]

    if filters.get("start_date") or filters.get("end_date"):
        created_at = {}
        if filters.get("start_date"):
            created_at["$gte"] = datetime.fromisoformat(filters["start_date"])
        if filters.get("end_date"):
            created_at["$lt"] = datetime.fromisoformat(filters["end_date"]) + timedelta(days=1)
        query["created_at"] = created_at

    return query


class CreditService:
    """Consumo y recarga de créditos con transacciones de MongoDB"""

    def __init__(self, db_manager: DatabaseManager, credits_per_model: int = CREDITS_PER_MODEL,
                 free_credits: int = FREE_CREDITS):
        self.db_manager = db_manager
        self.users_collection = db_manager.users
        self.transactions_collection = db_manager.credit_transactions
        self.credits_per_model = credits_per_model
        self.free_credits = free_credits
        self.logger = logging.getLogger(__name__)

    def calculate_credits_needed(self, models: List[str]) -> int:
        return calculate_credits_needed(models, self.credits_per_model)

    def validate_analysis_request(self, models: List[str]) -> Dict[str, Any]:
        return validate_analysis_request(models, self.credits_per_model)

    async def _get_user(self, user_id: str, session=None) -> Dict[str, Any]:
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)}, session=session)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def has_enough_credits(self, user_id: str, required_credits: int) -> Dict[str, Any]:
        user = await self._get_user(user_id)
        current_balance = user.get("credits_balance") or 0
        return {"has_enough": current_balance >= required_credits, "current_balance": current_balance}

    async def deduct_credits(self, user_id: str, amount: int, analysis_id: str, description: str) -> Dict[str, Any]:
        """Descuenta créditos y registra el consumo en una sola transacción"""
        result: Dict[str, Any] = {}

        async def _deduct(session):
            user = await self._get_user(user_id, session=session)
            current_balance = user.get("credits_balance") or 0
            if current_balance < amount:
                raise InsufficientCreditsError("Insufficient credits")

            now = utcnow()
            await self.users_collection.update_one(
                {"_id": user["_id"]},
                {
                    "$set": {"credits_balance": current_balance - amount, "updated_at": now},
                    "$inc": {"total_credits_used": amount},
                },
                session=session,
            )
            transaction = CreditTransactionModel(
                user_id=user["_id"],
                type=TransactionType.USAGE,
                amount=-amount,
                description=description,
                analysis_id=analysis_id,
                created_at=now,
                updated_at=now,
            )
            await self.transactions_collection.insert_one(transaction.to_dict(), session=session)
            result["new_balance"] = current_balance - amount

        try:
            async with await self.db_manager.start_session() as session:
                await session.with_transaction(_deduct)
        except Exception as e:
            self.logger.error(f"Error deducting credits: {e}")
            raise

        self.logger.info(f"Deducted {amount} credits from user {user_id} for {analysis_id}")
        return {"success": True, "new_balance": result["new_balance"]}

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        type: str,
        description: str,
        stripe_payment_intent_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Suma créditos (purchase, bonus o refund) y registra el movimiento"""
        transaction_type = TransactionType(type)
        result: Dict[str, Any] = {}

        async def _add(session):
            user = await self._get_user(user_id, session=session)
            new_balance = (user.get("credits_balance") or 0) + amount

            now = utcnow()
            update: Dict[str, Any] = {"$set": {"credits_balance": new_balance, "updated_at": now}}
            if transaction_type == TransactionType.PURCHASE:
                update["$inc"] = {"total_credits_purchased": amount}
            await self.users_collection.update_one({"_id": user["_id"]}, update, session=session)

            transaction = CreditTransactionModel(
                user_id=user["_id"],
                type=transaction_type,
                amount=amount,
                description=description,
                stripe_payment_intent_id=stripe_payment_intent_id,
                created_at=now,
                updated_at=now,
            )
            await self.transactions_collection.insert_one(transaction.to_dict(), session=session)
            result["new_balance"] = new_balance

        try:
            async with await self.db_manager.start_session() as session:
                await session.with_transaction(_add)
        except Exception as e:
            self.logger.error(f"Error adding credits: {e}")
            raise

        self.logger.info(f"Added {amount} {transaction_type.value} credits to user {user_id}")
        return {"success": True, "new_balance": result["new_balance"]}

    async def assign_free_credits(self, user_id: str) -> Dict[str, Any]:
        """Bono de bienvenida para usuarios nuevos"""
        return await self.add_credits(
            user_id,
            self.free_credits,
            TransactionType.BONUS.value,
            "Welcome bonus - Free credits for new users",
        )

    async def get_credit_history(
        self,
        user_id: str,
        limit: int = 50,
        skip: int = 0,
        filters: Optional[Dict[str, Optional[str]]] = None
    ) -> List[Dict[str, Any]]:
        cursor = (
            self.transactions_collection.find(build_history_query(user_id, filters))
            .sort("created_at", -1)
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def get_credit_history_count(self, user_id: str,
                                       filters: Optional[Dict[str, Optional[str]]] = None) -> int:
        return await self.transactions_collection.count_documents(build_history_query(user_id, filters))

    async def get_credit_balance(self, user_id: str) -> int:
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)}, {"credits_balance": 1})
        return (user or {}).get("credits_balance") or 0

    async def get_credit_stats(self, user_id: str) -> Dict[str, Any]:
        """Totales del usuario y sus últimos 10 movimientos"""
        user = await self._get_user(user_id)
        recent = await (
            self.transactions_collection.find({"user_id": user["_id"]})
            .sort("created_at", -1)
            .limit(10)
            .to_list(length=10)
        )
        return {
            "current_balance": user.get("credits_balance") or 0,
            "total_purchased": user.get("total_credits_purchased") or 0,
            "total_used": user.get("total_credits_used") or 0,
            "recent_transactions": recent,
        }
