"""
Raffle System Configuration
All configurable parameters for the raffle engine
"""

import os

# Database
DEFAULT_DATABASE_URL = "sqlite:///raffles.db"

# Transaction budgets (seconds). A timeout aborts and rolls back.
RAFFLE_LOCK_TIMEOUT_SECONDS = int(os.getenv("RAFFLE_LOCK_TIMEOUT_SECONDS", "20"))
RAFFLE_TRANSACTION_TIMEOUT_SECONDS = int(os.getenv("RAFFLE_TRANSACTION_TIMEOUT_SECONDS", "30"))

# Draw settings
DRAW_SEED_BYTES = int(os.getenv("DRAW_SEED_BYTES", "32"))  # 256-bit seed, 64 hex chars
DRAW_MAX_ATTEMPTS_FACTOR = int(os.getenv("DRAW_MAX_ATTEMPTS_FACTOR", "10"))  # attempts per ticket
DRAW_MIN_ATTEMPTS = int(os.getenv("DRAW_MIN_ATTEMPTS", "1000"))

# Admin-added tickets can never exceed this per user, whatever the raffle allows
MANUAL_TICKETS_HARD_CAP = int(os.getenv("MANUAL_TICKETS_HARD_CAP", "50"))

# Raffle statuses
STATUS_UPCOMING = "upcoming"
STATUS_ACTIVE = "active"
STATUS_DRAWING = "drawing"
STATUS_COMPLETED = "completed"

PURCHASABLE_STATUSES = (STATUS_ACTIVE, STATUS_UPCOMING)
DRAWN_STATUSES = (STATUS_COMPLETED, STATUS_DRAWING)

# Entry sources
SOURCE_SYSTEM = "system"
SOURCE_CUSTOM = "custom"

# Purchase ledger
PURCHASE_TYPE_RAFFLE_TICKET = "raffle_ticket"
DEFAULT_HISTORY_LIMIT = 50

# Notifications
REDIS_RAFFLE_CHANNEL = os.getenv("REDIS_RAFFLE_CHANNEL", "raffles:events")
