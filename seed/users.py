# Seed data: dashboard accounts

from .config import new_id, now_utc, pwd_context

USERS = [
    {"email": "clerk@grievance.local",   "password": "clerk12345"},
    {"email": "officer@grievance.local", "password": "officer12345"},
    {"email": "admin@grievance.local",   "password": "admin12345"},
]

async def import_users(db) -> dict[str, str]:
    """Insert seed accounts. Returns {email: _id} mapping."""
    print("\n  Importing seed accounts...")
    user_ids: dict[str, str] = {}
    for u in USERS:
        uid = new_id()
        db.users.insert_one({
            "_id": uid,
            "email": u["email"],
            "hashed_password": pwd_context.hash(u["password"]),
            "created_at": now_utc(),
        })
        user_ids[u["email"]] = uid
        print(f"    {u['email']}")
    db.users.create_index([("email", 1)], unique=True)
    print(f"  => {len(USERS)} accounts created")
    return user_ids
