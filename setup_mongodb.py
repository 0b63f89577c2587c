"""
MongoDB Setup Script
Tests the connection and creates the unanswered-question collection indexes.
"""
import asyncio
from src.repositories import db_manager, UNANSWERED_QUESTIONS_COLLECTION
from src.config import settings


async def setup_mongodb():
    """Initialize the database used for shared unanswered-question tracking."""
    print("🔄 Connecting to MongoDB...")
    print(f"   Database: {settings.mongodb_database}")
    print()

    try:
        await db_manager.connect()
        print("✅ Connection successful!")
        print()

        db = db_manager.database

        existing_collections = await db.list_collection_names()
        print(f"📦 Existing collections: {existing_collections or 'None'}")
        print()

        print("🔨 Creating indexes...")
        await db_manager.create_indexes()
        print("✅ Indexes created successfully!")
        print()

        indexes = await db[UNANSWERED_QUESTIONS_COLLECTION].index_information()
        print(f"📊 {UNANSWERED_QUESTIONS_COLLECTION}: {len(indexes)} indexes")
        for idx_name in indexes:
            print(f"      - {idx_name}")

        print()
        print("🎉 MongoDB setup complete!")
        print()

    except Exception as e:
        print(f"❌ Error: {e}")
        print()
        print("💡 Troubleshooting:")
        print("   1. Check MONGODB_URI and that the server is reachable")
        print("   2. Check that the credentials are correct")
        raise

    finally:
        await db_manager.disconnect()
        print("👋 Disconnected from MongoDB")


if __name__ == "__main__":
    asyncio.run(setup_mongodb())
