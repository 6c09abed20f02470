"""
Database Manager asíncrono con Motor
"""

import logging
from typing import Optional
from motor.motor_asyncio import (
    AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection, AsyncIOMotorClientSession
)

from ..config.settings import DatabaseConfig


class DatabaseManager:
    """Manager para conexiones asíncronas a MongoDB usando Motor"""

    def __init__(self, connection_string: str, database_name: str, config: Optional[DatabaseConfig] = None):
        self.connection_string = connection_string
        self.database_name = database_name
        self.config = config or DatabaseConfig()
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self.logger = logging.getLogger(__name__)

    async def connect(self) -> None:
        """Conecta a MongoDB"""
        try:
            self.client = AsyncIOMotorClient(
                self.connection_string,
                maxPoolSize=self.config.max_pool_size,
                tz_aware=True,
            )
            self.db = self.client[self.database_name]

            # Verificar conexión
            await self.db.command("ping")

            self.logger.info(f"Connected to MongoDB: {self.database_name}")

        except Exception as e:
            self.logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self) -> None:
        """Cierra la conexión"""
        if self.client:
            self.client.close()
            self.logger.info("MongoDB connection closed")

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Obtiene una colección específica"""
        if self.db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.db[collection_name]

    async def start_session(self) -> AsyncIOMotorClientSession:
        """Sesión para operaciones transaccionales (requiere replica set)"""
        if self.client is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return await self.client.start_session()

    # Propiedades para acceso directo a colecciones
    @property
    def users(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.users_collection)

    @property
    def plans(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.plans_collection)

    @property
    def brands(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.brands_collection)

    @property
    def memberships(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.memberships_collection)

    @property
    def invites(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.invites_collection)

    @property
    def credit_transactions(self) -> AsyncIOMotorCollection:
        """Ledger de créditos"""
        return self.get_collection(self.config.transactions_collection)

    @property
    def analyses(self) -> AsyncIOMotorCollection:
        """Resultados MultiPromptAnalysis"""
        return self.get_collection(self.config.analyses_collection)

    @property
    def analysis_statuses(self) -> AsyncIOMotorCollection:
        """Estado de ejecuciones en background"""
        return self.get_collection(self.config.statuses_collection)

    @property
    def analysis_pairs(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.pairs_collection)

    @property
    def cron_locks(self) -> AsyncIOMotorCollection:
        return self.get_collection(self.config.locks_collection)

    async def health_check(self) -> bool:
        """Verifica la salud de la conexión"""
        try:
            if self.db is None:
                return False
            await self.db.command("ping")
            return True
        except Exception as e:
            self.logger.error(f"Health check failed: {e}")
            return False
