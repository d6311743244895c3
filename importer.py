# Citizen Grievance Desk: Seed Data Importer
# Resets MongoDB and populates it with demo accounts and grievances
#
# Usage:  python importer.py

import asyncio

from pymongo import MongoClient

from seed.config import MONGODB_URL, MONGODB_DB
from seed.users import import_users, USERS
from seed.grievances import import_grievances


async def main():
    print("=" * 64)
    print("  Citizen Grievance Desk: Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/4] Connecting to MongoDB...")
    mongo_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = mongo_client[MONGODB_DB]
    print(f"  Connected: {MONGODB_URL} / {MONGODB_DB}")

    # ------------------------------------------------------------------
    # 2. Reset all collections
    # ------------------------------------------------------------------
    print("\n[2/4] Resetting collections...")
    for mongo_coll in ["grievances", "users", "messages", "media.files", "media.chunks"]:
        db[mongo_coll].drop()
    print("  MongoDB: grievances, users, messages, media.files, media.chunks (GridFS)")

    # ------------------------------------------------------------------
    # 3. Seed accounts
    # ------------------------------------------------------------------
    print("\n[3/4] Accounts")
    await import_users(db)

    # ------------------------------------------------------------------
    # 4. Seed grievances
    # ------------------------------------------------------------------
    print("\n[4/4] Grievances")
    n_grievances = await import_grievances(db)

    mongo_client.close()

    print("\n" + "=" * 64)
    print("  IMPORT COMPLETE")
    print("=" * 64)
    print(f"  Accounts:    {len(USERS)}")
    print(f"  Grievances:  {n_grievances}")
    print()
    print("  Test credentials:")
    for u in USERS:
        print(f"    {u['email']:28s} / {u['password']}")
    print("=" * 64)


if __name__ == "__main__":
    asyncio.run(main())
