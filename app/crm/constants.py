"""
Central constants for the SalesCRM application.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------
LEAD_STATUSES = ("new", "contacted", "qualified", "proposal", "negotiation", "closed_won", "closed_lost")
OPEN_LEAD_STATUSES = ("new", "contacted", "qualified", "proposal", "negotiation")
CLOSED_LEAD_STATUSES = frozenset({"closed_won", "closed_lost"})

LEAD_STATUS_LABELS = {
    "new": "New",
    "contacted": "Contacted",
    "qualified": "Qualified",
    "proposal": "Proposal",
    "negotiation": "Negotiation",
    "closed_won": "Closed Won",
    "closed_lost": "Closed Lost",
}

LEAD_SOURCES = ("walk_in", "referral", "website", "call", "whatsapp", "campaign", "other")
PRIORITIES = ("low", "medium", "high", "critical")
ACTIVITY_CHANNELS = ("call", "whatsapp", "email", "visit", "note")

# XP granted to the lead owner when a lead enters the status.
LEAD_STATUS_XP = {
    "contacted": 5,
    "qualified": 10,
    "proposal": 15,
    "negotiation": 20,
    "closed_won": 50,
    "closed_lost": 0,
}

# ---------------------------------------------------------------------------
# Tasks (kanban columns, in display order)
# ---------------------------------------------------------------------------
TASK_COLUMNS = (
    ("todo", "To Do"),
    ("in_progress", "In Progress"),
    ("review", "Review"),
    ("completed", "Completed"),
)
TASK_STATUSES = tuple(key for key, _ in TASK_COLUMNS)
TASK_TYPES = ("call", "visit", "follow_up", "documentation", "meeting", "other")
DEFAULT_TASK_XP = 10

# ---------------------------------------------------------------------------
# Customers / cross-sell
# ---------------------------------------------------------------------------
SEGMENTS = ("Premium", "Gold", "Silver", "Basic")
# (minimum annual income, segment), checked top-down
SEGMENT_THRESHOLDS = (
    (2_500_000, "Premium"),
    (1_200_000, "Gold"),
    (500_000, "Silver"),
)
KYC_STATUSES = ("pending", "verified", "expired")
PRODUCT_CATEGORIES = ("lending", "insurance", "investments", "cards", "banking")
URGENCIES = ("High", "Medium", "Low")

# ---------------------------------------------------------------------------
# Territories / KRA
# ---------------------------------------------------------------------------
TERRITORY_POTENTIALS = ("Low", "Medium", "High", "Very High")
KRA_METRICS = ("percentage", "count", "amount")
KRA_FREQUENCIES = ("daily", "weekly", "monthly", "quarterly")
KPA_CATEGORIES = (
    "Sales Performance",
    "Customer Acquisition",
    "Customer Retention",
    "Process Improvement",
    "Team Development",
    "Risk Management",
)
MAX_ROLE_KRA_WEIGHT = 100

BADGE_CATEGORIES = ("performance", "streak", "milestone", "team", "learning")

# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------
PERMISSIONS = {
    "dashboard.view": "Dashboard: view",
    "leads.view": "Leads: view",
    "leads.create": "Leads: create",
    "leads.edit": "Leads: edit",
    "leads.delete": "Leads: delete",
    "leads.assign": "Leads: assign",
    "leads.export": "Leads: export",
    "funnel.view": "Sales Funnel: view",
    "tasks.view": "Tasks: view",
    "tasks.create": "Tasks: create",
    "tasks.edit": "Tasks: edit",
    "tasks.delete": "Tasks: delete",
    "customers.view": "Customers: view",
    "customers.create": "Customers: create",
    "customers.edit": "Customers: edit",
    "customers.notes": "Customers: notes",
    "customers.360": "Customers: 360 view",
    "territories.view": "Territories: view",
    "territories.manage": "Territories: manage",
    "kra.view": "KRA: view own",
    "kra.manage": "KRA/KPA: manage",
    "gamification.view": "Gamification: view",
    "reports.view": "Reports: view",
    "reports.team": "Reports: team performance",
    "reports.export": "Reports: export",
    "rules.manage": "Cross-sell rules: manage",
    "users.view": "Users: view",
    "users.manage": "Users: manage",
    "data.view_all": "Data: view all records",
    "admin.view": "Admin: audit trail",
}

_FIELD_BASE = (
    "dashboard.view",
    "leads.view",
    "leads.create",
    "leads.edit",
    "funnel.view",
    "tasks.view",
    "tasks.create",
    "tasks.edit",
    "customers.view",
    "customers.notes",
    "kra.view",
    "gamification.view",
)

# key -> (display name, description, level, permission keys)
ROLE_DEFINITIONS: dict[str, tuple[str, str, int, tuple[str, ...]]] = {
    "sales_executive": (
        "Field Sales Officer",
        "Handles outbound sales and customer visits",
        1,
        _FIELD_BASE + ("customers.edit", "territories.view", "reports.view"),
    ),
    "inbound_agent": (
        "Inbound Contact Agent",
        "Handles incoming leads via call, WhatsApp, web",
        1,
        _FIELD_BASE + ("customers.create", "customers.edit"),
    ),
    "relationship_manager": (
        "Relationship Manager",
        "Manages portfolio of high-value customers",
        2,
        _FIELD_BASE
        + (
            "customers.create",
            "customers.edit",
            "customers.360",
            "reports.view",
            "reports.export",
        ),
    ),
    "supervisor": (
        "Branch Supervisor",
        "Monitors team performance and manages branch operations",
        3,
        _FIELD_BASE
        + (
            "leads.delete",
            "leads.assign",
            "leads.export",
            "tasks.delete",
            "customers.create",
            "customers.edit",
            "customers.360",
            "territories.view",
            "territories.manage",
            "reports.view",
            "reports.team",
            "reports.export",
            "users.view",
        ),
    ),
    "admin": (
        "Admin/MIS Officer",
        "System configuration and reporting oversight",
        4,
        tuple(PERMISSIONS.keys()),
    ),
}
