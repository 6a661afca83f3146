"""
Database Schema Setup for Raffle System
Creates the tables and indices used by the raffle engine, plus raffle-level helpers
"""

from datetime import datetime, timezone
import logging

from sqlalchemy import DateTime, bindparam, text

from .config import (
    DRAWN_STATUSES,
    STATUS_ACTIVE,
    STATUS_UPCOMING,
)
from .errors import RaffleError, RaffleNotFoundError

logger = logging.getLogger(__name__)

# SQL schema for the raffle engine. {pk} is filled in per dialect.
RAFFLE_SCHEMA_SQL = """
-- ============================================
-- EXTERNAL COLLABORATORS (created only if missing)
-- ============================================

CREATE TABLE IF NOT EXISTS users (
    id {pk},
    username TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Sweet Coins balance ledger (one row per user)
CREATE TABLE IF NOT EXISTS user_sweet_coins (
    id {pk},
    user_id BIGINT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
    total_sweet_coins INTEGER NOT NULL DEFAULT 0,
    is_subscriber BOOLEAN NOT NULL DEFAULT FALSE,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- ============================================
-- RAFFLE ENGINE SCHEMA
-- ============================================

CREATE TABLE IF NOT EXISTS raffles (
    id {pk},
    title TEXT NOT NULL,
    prize_description TEXT NOT NULL DEFAULT '',
    ticket_cost INTEGER NOT NULL,
    max_tickets_per_user INTEGER,
    total_tickets_cap INTEGER,
    number_of_winners INTEGER NOT NULL DEFAULT 1,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'upcoming',  -- upcoming, active, drawing, completed
    sub_only BOOLEAN NOT NULL DEFAULT FALSE,
    hidden BOOLEAN NOT NULL DEFAULT FALSE,
    hidden_until_start BOOLEAN NOT NULL DEFAULT FALSE,
    draw_seed TEXT,
    drawn_at TIMESTAMP,
    draw_total_tickets INTEGER,
    created_by BIGINT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- One aggregate row per (raffle, user); tickets accumulate
CREATE TABLE IF NOT EXISTS raffle_entries (
    id {pk},
    raffle_id BIGINT NOT NULL REFERENCES raffles(id) ON DELETE CASCADE,
    user_id BIGINT NOT NULL REFERENCES users(id),
    tickets INTEGER NOT NULL DEFAULT 1,
    source VARCHAR(20) NOT NULL DEFAULT 'system',  -- system, custom
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(raffle_id, user_id)
);

-- Drawn winners, one row per spin
CREATE TABLE IF NOT EXISTS raffle_winners (
    id {pk},
    raffle_id BIGINT NOT NULL REFERENCES raffles(id) ON DELETE CASCADE,
    entry_id BIGINT NOT NULL REFERENCES raffle_entries(id) ON DELETE CASCADE,
    user_id BIGINT NOT NULL,
    selected_ticket_index BIGINT NOT NULL,
    ticket_range_start BIGINT NOT NULL,
    ticket_range_end BIGINT NOT NULL,
    spin_number INTEGER NOT NULL,
    selected_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(raffle_id, spin_number)
);

-- Append-only purchase history
CREATE TABLE IF NOT EXISTS purchase_transactions (
    id {pk},
    user_id BIGINT NOT NULL,
    type VARCHAR(50) NOT NULL,
    quantity INTEGER NOT NULL,
    points_spent INTEGER NOT NULL,
    item_name TEXT NOT NULL,
    raffle_id BIGINT,
    metadata TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- ============================================
-- INDICES FOR PERFORMANCE
-- ============================================

CREATE INDEX IF NOT EXISTS idx_raffle_entries_raffle ON raffle_entries(raffle_id);
CREATE INDEX IF NOT EXISTS idx_raffle_entries_user ON raffle_entries(user_id);
CREATE INDEX IF NOT EXISTS idx_raffle_winners_raffle ON raffle_winners(raffle_id);
CREATE INDEX IF NOT EXISTS idx_raffles_status ON raffles(status);
CREATE INDEX IF NOT EXISTS idx_purchase_transactions_user_created ON purchase_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_purchase_transactions_raffle ON purchase_transactions(raffle_id);
"""

PRIMARY_KEY_TYPES = {
    'postgresql': 'BIGSERIAL PRIMARY KEY',
    'sqlite': 'INTEGER PRIMARY KEY AUTOINCREMENT',
}

REQUIRED_TABLES = [
    'users',
    'user_sweet_coins',
    'raffles',
    'raffle_entries',
    'raffle_winners',
    'purchase_transactions',
]

RAFFLE_COLUMNS = """
    id, title, prize_description, ticket_cost, max_tickets_per_user, total_tickets_cap,
    number_of_winners, start_at, end_at, status, sub_only, hidden, hidden_until_start,
    draw_seed, drawn_at, draw_total_tickets, created_by, created_at
"""


def utcnow():
    """Naive UTC timestamp, the format every TIMESTAMP column is stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_positive_int(value):
    """True for ints >= 1; bools and floats are not ticket counts"""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def timestamp_params(statement, *names):
    """Bind the named parameters as DateTime so SQLite stores them consistently"""
    return statement.bindparams(*[bindparam(name, type_=DateTime) for name in names])


def typed_raffle_query(statement):
    """Attach DateTime result types to the raffle timestamp columns"""
    return statement.columns(
        start_at=DateTime, end_at=DateTime, drawn_at=DateTime, created_at=DateTime
    )


def for_update(conn):
    """Row-lock suffix for the connection's dialect (SQLite locks the whole database instead)"""
    return "FOR UPDATE" if conn.dialect.name == 'postgresql' else ""


def render_schema(dialect_name):
    pk = PRIMARY_KEY_TYPES.get(dialect_name, PRIMARY_KEY_TYPES['postgresql'])
    return RAFFLE_SCHEMA_SQL.replace('{pk}', pk)


def split_statements(sql):
    """Split a script into single statements (SQLite executes one at a time)"""
    statements = []
    current_statement = []

    for line in sql.split('\n'):
        stripped = line.strip()
        if not stripped or stripped.startswith('--'):
            continue

        current_statement.append(line)

        if stripped.endswith(';'):
            statements.append('\n'.join(current_statement))
            current_statement = []

    return statements


def setup_raffle_database(engine):
    """
    Create all raffle tables and indices

    Args:
        engine: SQLAlchemy engine instance

    Returns:
        bool: True if successful, False otherwise
    """
    try:
        logger.info("Setting up raffle database schema...")

        with engine.begin() as conn:
            for statement in split_statements(render_schema(conn.dialect.name)):
                conn.execute(text(statement))

        logger.info("✅ Raffle database schema created successfully")
        return True

    except Exception as e:
        logger.error(f"❌ Failed to setup raffle database: {e}")
        return False


def verify_raffle_schema(engine):
    """
    Verify that all required tables exist

    Returns:
        dict: Status of each table (True/False)
    """
    status = {}

    try:
        with engine.begin() as conn:
            if conn.dialect.name == 'sqlite':
                query = text("SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = :table")
            else:
                query = text("""
                    SELECT COUNT(*) FROM information_schema.tables
                    WHERE table_name = :table
                """)
            for table in REQUIRED_TABLES:
                status[table] = bool(conn.execute(query, {'table': table}).scalar())

    except Exception as e:
        logger.error(f"Failed to verify schema: {e}")

    return status


def row_to_raffle(row):
    raffle = dict(row._mapping)
    raffle['sub_only'] = bool(raffle['sub_only'])
    raffle['hidden'] = bool(raffle['hidden'])
    raffle['hidden_until_start'] = bool(raffle['hidden_until_start'])
    return raffle


def fetch_raffle(conn, raffle_id, lock=False):
    """
    Load one raffle row inside an open transaction

    Args:
        conn: SQLAlchemy connection (inside engine.begin())
        raffle_id: Raffle ID
        lock: Take a row lock for the rest of the transaction

    Returns:
        dict: Raffle row

    Raises:
        RaffleNotFoundError: No such raffle
    """
    statement = typed_raffle_query(text(f"""
        SELECT {RAFFLE_COLUMNS}
        FROM raffles
        WHERE id = :raffle_id
        {for_update(conn) if lock else ''}
    """))
    row = conn.execute(statement, {'raffle_id': raffle_id}).fetchone()
    if not row:
        raise RaffleNotFoundError("Raffle not found")
    return row_to_raffle(row)


def create_raffle(engine, title, ticket_cost, start_at, end_at, prize_description='',
                  max_tickets_per_user=None, total_tickets_cap=None, number_of_winners=1,
                  sub_only=False, hidden=False, hidden_until_start=False, created_by=None,
                  now=None):
    """
    Create a raffle. Status starts as 'active' if start_at has passed, else 'upcoming'.

    Returns:
        int: New raffle ID

    Raises:
        RaffleError: Invalid parameters
    """
    if not isinstance(ticket_cost, int) or isinstance(ticket_cost, bool):
        raise RaffleError("Ticket cost must be a whole number")
    if ticket_cost < 0:
        raise RaffleError("Ticket cost cannot be negative")
    if end_at <= start_at:
        raise RaffleError("Raffle must end after it starts")
    if max_tickets_per_user is not None and not is_positive_int(max_tickets_per_user):
        raise RaffleError("Maximum tickets per user must be greater than 0")
    if total_tickets_cap is not None and not is_positive_int(total_tickets_cap):
        raise RaffleError("Total tickets cap must be greater than 0")
    if not is_positive_int(number_of_winners):
        raise RaffleError("Number of winners must be greater than 0")

    now = now or utcnow()
    status = STATUS_ACTIVE if start_at <= now else STATUS_UPCOMING

    with engine.begin() as conn:
        statement = timestamp_params(text("""
            INSERT INTO raffles
                (title, prize_description, ticket_cost, max_tickets_per_user, total_tickets_cap,
                 number_of_winners, start_at, end_at, status, sub_only, hidden,
                 hidden_until_start, created_by, created_at)
            VALUES
                (:title, :prize_description, :ticket_cost, :max_tickets_per_user, :total_tickets_cap,
                 :number_of_winners, :start_at, :end_at, :status, :sub_only, :hidden,
                 :hidden_until_start, :created_by, :created_at)
            RETURNING id
        """), 'start_at', 'end_at', 'created_at')
        raffle_id = conn.execute(statement, {
            'title': title,
            'prize_description': prize_description,
            'ticket_cost': ticket_cost,
            'max_tickets_per_user': max_tickets_per_user,
            'total_tickets_cap': total_tickets_cap,
            'number_of_winners': number_of_winners,
            'start_at': start_at,
            'end_at': end_at,
            'status': status,
            'sub_only': sub_only,
            'hidden': hidden,
            'hidden_until_start': hidden_until_start,
            'created_by': created_by,
            'created_at': now,
        }).scalar()

    logger.info(f"✅ Created raffle #{raffle_id} '{title}' ({status})")
    return raffle_id


def get_raffle(engine, raffle_id):
    """
    Get a raffle by ID

    Returns:
        dict: Raffle row or None
    """
    try:
        with engine.begin() as conn:
            return fetch_raffle(conn, raffle_id)
    except RaffleNotFoundError:
        return None


def end_raffle(engine, raffle_id, now=None):
    """
    Close ticket sales now. The raffle stays drawable; only a draw marks it completed.

    Raises:
        RaffleNotFoundError: No such raffle
        RaffleError: Winners already drawn
    """
    now = now or utcnow()
    with engine.begin() as conn:
        raffle = fetch_raffle(conn, raffle_id, lock=True)
        if raffle['status'] in DRAWN_STATUSES:
            raise RaffleError("Winners have already been drawn for this raffle")

        statement = timestamp_params(text("""
            UPDATE raffles
            SET end_at = :now
            WHERE id = :raffle_id
        """), 'now')
        conn.execute(statement, {'now': now, 'raffle_id': raffle_id})

    logger.info(f"Raffle #{raffle_id} ended at {now}")


def sync_raffle_statuses(engine, now=None):
    """
    Move upcoming raffles whose start time has passed to active

    Returns:
        int: Number of raffles activated
    """
    now = now or utcnow()
    with engine.begin() as conn:
        statement = timestamp_params(text("""
            UPDATE raffles
            SET status = :active
            WHERE status = :upcoming AND start_at <= :now
        """), 'now')
        activated = conn.execute(statement, {
            'active': STATUS_ACTIVE,
            'upcoming': STATUS_UPCOMING,
            'now': now,
        }).rowcount

    if activated:
        logger.info(f"Activated {activated} raffle(s)")
    return activated


def list_raffles(engine, include_hidden=False, now=None):
    """
    List raffles newest first. Hidden raffles, and hidden-until-start raffles
    that have not started, are left out unless include_hidden is set.
    """
    now = now or utcnow()
    with engine.begin() as conn:
        rows = conn.execute(typed_raffle_query(text(f"""
            SELECT {RAFFLE_COLUMNS}
            FROM raffles
            ORDER BY start_at DESC, id DESC
        """))).fetchall()

    raffles = [row_to_raffle(row) for row in rows]
    if include_hidden:
        return raffles
    return [
        r for r in raffles
        if not r['hidden'] and not (r['hidden_until_start'] and r['start_at'] > now)
    ]


if __name__ == "__main__":
    """
    Run this script directly to setup the database schema
    """
    from dotenv import load_dotenv

    from utils.db_context import create_raffle_engine, get_database_url
    from utils.logging_config import setup_logging

    load_dotenv()
    logger = setup_logging('raffle_system')

    engine = create_raffle_engine(get_database_url())

    if not setup_raffle_database(engine):
        logger.error("❌ Schema setup failed")
        raise SystemExit(1)

    status = verify_raffle_schema(engine)
    for table, exists in status.items():
        symbol = "✓" if exists else "✗"
        logger.info(f"  {symbol} {table}")
    if not all(status.values()):
        raise SystemExit(1)
