"""
Script para crear los índices de MongoDB de BrandViz
Ejecutar una vez por base: python -m brandviz.scripts.create_indexes
"""

import asyncio
import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from ..config.settings import get_settings
from ..infrastructure.database_manager import DatabaseManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# (colección, keys, opciones)
INDEXES = [
    ("users", [("email", ASCENDING)], {"unique": True, "name": "idx_user_email_unique"}),
    ("brands", [("owner_id", ASCENDING), ("deleted_at", ASCENDING)], {"name": "idx_brand_owner"}),
    ("memberships", [("brand_id", ASCENDING), ("user_id", ASCENDING)],
     {"unique": True, "name": "idx_membership_brand_user_unique"}),
    ("memberships", [("user_id", ASCENDING), ("status", ASCENDING)], {"name": "idx_membership_user_status"}),
    # Una sola invitación pendiente por email y marca
    ("invites", [("brand_id", ASCENDING), ("email", ASCENDING)],
     {"unique": True, "partialFilterExpression": {"status": "pending"}, "name": "idx_invite_pending_unique"}),
    ("invites", [("verify_token", ASCENDING)], {"name": "idx_invite_token"}),
    ("credit_transactions", [("user_id", ASCENDING), ("created_at", DESCENDING)], {"name": "idx_tx_user_created"}),
    ("credit_transactions", [("stripe_payment_intent_id", ASCENDING)],
     {"unique": True, "sparse": True, "name": "idx_tx_payment_intent_unique"}),
    ("analyses", [("brand_id", ASCENDING), ("created_at", DESCENDING)], {"name": "idx_analysis_brand_created"}),
    ("analyses", [("brand_id", ASCENDING), ("model", ASCENDING), ("stage", ASCENDING)],
     {"name": "idx_analysis_brand_model_stage"}),
    ("analysis_statuses", [("analysis_id", ASCENDING)], {"unique": True, "name": "idx_status_analysis_unique"}),
    ("analysis_statuses", [("brand_id", ASCENDING), ("status", ASCENDING)], {"name": "idx_status_brand_status"}),
    ("analysis_pairs", [("analysis_id", ASCENDING), ("model", ASCENDING), ("stage", ASCENDING)],
     {"unique": True, "name": "idx_pair_unique"}),
    # Los locks vencidos se borran solos
    ("cron_locks", [("expires_at", ASCENDING)], {"expireAfterSeconds": 0, "name": "idx_lock_ttl"}),
]


async def create_indexes(db_manager: DatabaseManager) -> None:
    """Crea los índices; los que ya existen se loguean y se saltean"""
    for collection_name, keys, options in INDEXES:
        collection = getattr(db_manager, collection_name)
        try:
            result = await collection.create_index(keys, **options)
            logger.info(f"Índice creado: {collection_name}.{result}")
        except OperationFailure as e:
            if "already exists" in str(e).lower():
                logger.warning(f"Índice ya existe: {options['name']} - {e}")
            else:
                raise


async def verify_indexes(db_manager: DatabaseManager) -> None:
    for collection_name in sorted({name for name, _, _ in INDEXES}):
        logger.info(f"Verificando índices de {collection_name}...")
        indexes = await getattr(db_manager, collection_name).list_indexes().to_list(None)
        for index in indexes:
            logger.info(f"  - {index['name']}: {index.get('key', {})}")


async def main() -> None:
    settings = get_settings()
    db_manager = DatabaseManager(settings.database.uri, settings.database.database, settings.database)
    await db_manager.connect()
    try:
        await create_indexes(db_manager)
        await verify_indexes(db_manager)
    finally:
        await db_manager.close()


if __name__ == "__main__":
    asyncio.run(main())
