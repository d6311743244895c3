# Seed data: Grievances
#
# Coverage matrix:
#   Statuses   : New (3), Open (2), In-Progress (2), Resolved (3), Completed (2)
#   Departments: Water, Electricity, Roads, Sanitation, Health
#   Priorities : Low, Medium, High
#   Special    : anonymous submissions, resolved records with resolved_at,
#                one Completed record that was Resolved first (keeps resolved_at)

from .config import days_ago

# age_days: when it was filed; resolved_after_hours: time to resolution (None = never resolved)
GRIEVANCES = [
    # ---- New (3) ----
    {"contact": "15551234001", "title": "No water supply since Monday",
     "description": "Our street has had no piped water for three days. The tanker has not come either.",
     "department": "Water", "priority": "High", "grievance_type": "Infrastructure",
     "category": "Water", "anonymity": False, "status": "New", "age_days": 1},

    {"contact": "15551234002", "title": "Streetlight flickering near school",
     "description": "The streetlight at the school gate flickers all night and goes dark for long stretches.",
     "department": "Electricity", "priority": "Medium", "grievance_type": "Maintenance",
     "category": "Lighting", "anonymity": True, "status": "New", "age_days": 2},

    {"contact": "15551234003", "title": "Question about connection fee",
     "description": "I was charged twice for a new water connection. Please explain the fee.",
     "department": "Water", "priority": "Low", "grievance_type": "Billing",
     "category": "Payment", "anonymity": False, "status": "New", "age_days": 0.5},

    # ---- Open (2) ----
    {"contact": "15551234004", "title": "Pothole on main road",
     "description": "A large pothole near the bus stop has caused two scooter accidents this week.",
     "department": "Roads", "priority": "High", "grievance_type": "Infrastructure",
     "category": "Maintenance", "anonymity": False, "status": "Open", "age_days": 6},

    {"contact": "15551234005", "title": "Garbage not collected",
     "description": "Garbage collection has skipped our lane for two weeks.",
     "department": "Sanitation", "priority": "Medium", "grievance_type": "Service",
     "category": "Waste", "anonymity": True, "status": "Open", "age_days": 9},

    # ---- In-Progress (2) ----
    {"contact": "15551234006", "title": "Frequent power cuts",
     "description": "Power goes off four to five times a day in our block, damaging appliances.",
     "department": "Electricity", "priority": "High", "grievance_type": "Service",
     "category": "Network", "anonymity": False, "status": "In-Progress", "age_days": 12},

    {"contact": "15551234007", "title": "Clinic closed during posted hours",
     "description": "The health clinic was locked at 11am on a weekday despite posted opening hours.",
     "department": "Health", "priority": "Medium", "grievance_type": "Health",
     "category": "HR", "anonymity": True, "status": "In-Progress", "age_days": 4},

    # ---- Resolved (3) ----
    {"contact": "15551234008", "title": "Leaking pipeline on 4th cross",
     "description": "A pipeline has been leaking for a week and the road is flooded.",
     "department": "Water", "priority": "High", "grievance_type": "Infrastructure",
     "category": "Water", "anonymity": False, "status": "Resolved", "age_days": 20,
     "resolved_after_hours": 36},

    {"contact": "15551234009", "title": "Blocked drain",
     "description": "The storm drain outside the market is blocked and smells.",
     "department": "Sanitation", "priority": "Medium", "grievance_type": "Maintenance",
     "category": "Drainage", "anonymity": False, "status": "Resolved", "age_days": 15,
     "resolved_after_hours": 72},

    {"contact": "15551234010", "title": "Broken footpath slab",
     "description": "A footpath slab is broken and an elderly neighbour tripped on it.",
     "department": "Roads", "priority": "Low", "grievance_type": "Infrastructure",
     "category": "Maintenance", "anonymity": True, "status": "Resolved", "age_days": 30,
     "resolved_after_hours": 120},

    # ---- Completed (2) ----
    {"contact": "15551234011", "title": "Meter reading wrong",
     "description": "My electricity bill shows a reading far above the meter.",
     "department": "Electricity", "priority": "Low", "grievance_type": "Billing",
     "category": "Payment", "anonymity": False, "status": "Completed", "age_days": 25,
     "resolved_after_hours": 48},

    {"contact": "15551234012", "title": "Vaccination camp information",
     "description": "When is the next vaccination camp for children in our ward?",
     "department": "Health", "priority": "Low", "grievance_type": "Health",
     "category": "Information", "anonymity": False, "status": "Completed", "age_days": 18},
]

async def import_grievances(db) -> int:
    """Insert seed grievances keyed by their normalized contact number."""
    print("\n  Importing seed grievances...")
    for g in GRIEVANCES:
        created_at = days_ago(g["age_days"])
        resolved_at = None
        if g.get("resolved_after_hours") is not None:
            resolved_at = days_ago(g["age_days"], hours=-g["resolved_after_hours"])
        db.grievances.insert_one({
            "_id": g["contact"], "contact_number": g["contact"],
            "title": g["title"], "description": g["description"],
            "department": g["department"], "priority": g["priority"],
            "grievance_type": g["grievance_type"], "category": g["category"],
            "anonymity": g["anonymity"], "status": g["status"],
            "resolved": resolved_at is not None,
            "created_at": created_at, "resolved_at": resolved_at,
        })
        print(f"    {g['contact']}  {g['status']:12s} {g['title'][:40]}")
    for key in ("created_at", "status", "department", "priority"):
        db.grievances.create_index(key)
    print(f"  => {len(GRIEVANCES)} grievances created")
    return len(GRIEVANCES)
