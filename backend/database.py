from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Stripe retries failed deliveries for up to 3 days; keep idempotency records for a week.
WEBHOOK_EVENT_RETENTION_SECONDS = 7 * 24 * 60 * 60


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ.get('DB_NAME', 'estate_admin')]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {self.db.name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def ping(self) -> bool:
        if self.db is None:
            return False
        await self.db.command("ping")
        return True

    async def _create_indexes(self):
        """Create MongoDB indexes for access lookups, timelines and idempotency."""
        # Webhook idempotency depends on this index; startup fails without it
        await self._ensure_webhook_event_index()

        try:
            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index("email", unique=True)
            await self.db.users.create_index("stripe_customer_id", sparse=True)
            await self.db.users.create_index("stripe_subscription_id", sparse=True)

            # Access resolution filters on owner OR collaborator membership
            await self.db.estates.create_index("estate_id", unique=True)
            await self.db.estates.create_index("owner_id")
            await self.db.estates.create_index("collaborators.user_id")
            await self.db.estates.create_index("invites.token", sparse=True)

            await self.db.estate_documents.create_index([("estate_id", 1), ("created_at", -1)])
            await self.db.estate_documents.create_index("document_id", unique=True)

            await self.db.invoices.create_index([("estate_id", 1), ("status", 1)])
            await self.db.invoices.create_index("invoice_id", unique=True)

            await self.db.estate_notes.create_index([("estate_id", 1), ("pinned", -1), ("created_at", -1)])
            await self.db.estate_notes.create_index("note_id", unique=True)
            await self.db.estate_tasks.create_index([("estate_id", 1), ("created_at", -1)])
            await self.db.estate_tasks.create_index("task_id", unique=True)

            # Activity timeline: newest first per estate, optionally filtered by type
            await self.db.estate_events.create_index([("estate_id", 1), ("created_at", -1)])
            await self.db.estate_events.create_index([("estate_id", 1), ("type", 1), ("created_at", -1)])
            await self.db.estate_events.create_index([("owner_id", 1), ("created_at", -1)])

            await self.db.webhook_events.create_index(
                "created_at",
                expireAfterSeconds=WEBHOOK_EVENT_RETENTION_SECONDS,
            )
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

    async def _ensure_webhook_event_index(self):
        """Unique event_id on webhook_events; a pre-existing unique index is accepted as is."""
        try:
            await self.db.webhook_events.create_index("event_id", unique=True)
        except OperationFailure as e:
            if await self._has_unique_event_id_index():
                logger.warning(f"webhook_events.event_id index already exists with other options: {e}")
                return
            logger.error(f"Cannot create unique webhook_events.event_id index: {e}")
            raise

    async def _has_unique_event_id_index(self) -> bool:
        indexes = await self.db.webhook_events.index_information()
        return any(
            info.get("unique") and list(info.get("key") or []) == [("event_id", 1)]
            for info in indexes.values()
        )


# Global database instance
database = Database()
