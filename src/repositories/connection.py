"""
MongoDB Connection Management
Singleton Motor client shared by every store that runs across instances.
"""
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional
from loguru import logger

from ..config import settings

UNANSWERED_QUESTIONS_COLLECTION = "unanswered_questions"


class DatabaseManager:
    """
    Singleton MongoDB client manager.
    Handles connection lifecycle, pooling, and index creation.
    """

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[AsyncIOMotorClient] = None
    _database: Optional[AsyncIOMotorDatabase] = None

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def connect(self) -> None:
        """
        Open the client with the configured pool settings.
        Idempotent: a healthy client is reused.
        """
        if self._client:
            try:
                await self._client.admin.command("ping")
                logger.debug("Reusing healthy MongoDB connection")
                return
            except Exception as e:
                logger.warning(f"MongoDB ping failed ({e}). Rebuilding client...")
                self._client = None
                self._database = None

        logger.info(
            f"Connecting to MongoDB database '{settings.mongodb_database}'",
            extra={
                "max_pool_size": settings.mongodb_max_pool_size,
                "environment": settings.environment
            }
        )
        self._client = AsyncIOMotorClient(
            settings.mongodb_uri,
            maxPoolSize=settings.mongodb_max_pool_size,
            minPoolSize=settings.mongodb_min_pool_size,
            serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms,
        )
        self._database = self._client[settings.mongodb_database]

    async def disconnect(self) -> None:
        if self._client is None:
            logger.debug("MongoDB client already disconnected")
            return

        self._client.close()
        self._client = None
        self._database = None
        logger.info("MongoDB connection closed")

    @property
    def database(self) -> AsyncIOMotorDatabase:
        """Raises RuntimeError if not connected."""
        if self._database is None:
            raise RuntimeError(
                "Database not connected. Call await db_manager.connect() first."
            )
        return self._database

    async def create_indexes(self) -> None:
        """Indexes for the unanswered-question store. Safe to re-run."""
        collection = self.database[UNANSWERED_QUESTIONS_COLLECTION]

        logger.info("Creating MongoDB indexes")

        # One record per (business, normalized question); upserts rely on it
        await collection.create_index(
            [("business_id", 1), ("question_hash", 1)],
            unique=True,
            name="idx_business_question_unique"
        )
        # Review queue: most frequent open questions per business
        await collection.create_index(
            [("business_id", 1), ("status", 1), ("frequency", -1)],
            name="idx_business_status_frequency"
        )
        await collection.create_index(
            "last_asked_at",
            name="idx_last_asked"
        )

        logger.info("MongoDB indexes created successfully")


db_manager = DatabaseManager()


async def get_database() -> AsyncIOMotorDatabase:
    return db_manager.database
