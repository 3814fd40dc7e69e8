from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Seeded only when the plans collection has no document with the same plan_id
DEFAULT_PLANS = [
    {
        "plan_id": 1,
        "name": "Básico",
        "price": "49.90",
        "annual_price": "499.00",
        "max_professionals": 1,
        "free_days": 0,
        "permissions": ["dashboard", "appointments", "services", "professionals", "clients", "settings"],
        "is_active": True,
    },
    {
        "plan_id": 2,
        "name": "Premium",
        "price": "89.90",
        "annual_price": "899.00",
        "max_professionals": 5,
        "free_days": 0,
        "permissions": [
            "dashboard", "appointments", "services", "professionals", "clients",
            "reviews", "tasks", "messages", "coupons", "reports", "settings",
        ],
        "is_active": True,
    },
    {
        "plan_id": 3,
        "name": "Empresarial",
        "price": "149.90",
        "annual_price": "1499.00",
        "max_professionals": 10,
        "free_days": 0,
        "permissions": [
            "dashboard", "appointments", "services", "professionals", "clients",
            "reviews", "tasks", "points_program", "loyalty", "inventory",
            "messages", "coupons", "financial", "reports", "settings",
        ],
        "is_active": True,
    },
]

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
            await self._seed_default_plans()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for lookups and the in-flight intent guard."""
        await self.db.companies.create_index("company_id", unique=True)
        await self.db.companies.create_index("stripe_customer_id", sparse=True)
        await self.db.companies.create_index("stripe_subscription_id", sparse=True)

        await self.db.plans.create_index("plan_id", unique=True)

        # At most one pending intent per company; checked-and-set by insert
        await self.db.subscription_intents.create_index("intent_id", unique=True)
        await self.db.subscription_intents.create_index(
            "company_id",
            unique=True,
            partialFilterExpression={"status": "pending"},
            name="uniq_pending_intent_per_company",
        )
        await self.db.subscription_intents.create_index("stripe_object_id", sparse=True)

        await self.db.stripe_events.create_index("event_id", unique=True)

        await self.db.audit_logs.create_index([("company_id", 1), ("timestamp", -1)])
        await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

        logger.info("Database indexes created")

    async def _seed_default_plans(self):
        for plan in DEFAULT_PLANS:
            await self.db.plans.update_one(
                {"plan_id": plan["plan_id"]},
                {"$setOnInsert": plan},
                upsert=True,
            )
        logger.info("Default plans seeded")

# Global database instance
database = Database()
