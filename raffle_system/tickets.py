"""
Core Ticket Management Logic
Handles ticket purchases with Sweet Coins, admin ticket edits, entry snapshots and purchase history
"""

import json
import logging

from sqlalchemy import DateTime, text

from utils.db_context import get_engine, locked_transaction
from utils.error_helpers import raffle_result
from utils.redis_publisher import get_publisher

from .config import (
    DEFAULT_HISTORY_LIMIT,
    DRAWN_STATUSES,
    MANUAL_TICKETS_HARD_CAP,
    PURCHASABLE_STATUSES,
    PURCHASE_TYPE_RAFFLE_TICKET,
    SOURCE_CUSTOM,
    SOURCE_SYSTEM,
)
from .database import fetch_raffle, for_update, is_positive_int, timestamp_params, utcnow
from .errors import RaffleError, RaffleNotFoundError, RaffleStateError
from .ranges import build_entry_ranges

logger = logging.getLogger(__name__)


def load_entries(conn, raffle_id):
    """
    Load a raffle's entries in creation order, ready for build_entry_ranges

    Returns:
        list: dicts with entry_id, user_id, username, tickets, source
    """
    result = conn.execute(text("""
        SELECT e.id, e.user_id, u.username, e.tickets, e.source
        FROM raffle_entries e
        JOIN users u ON u.id = e.user_id
        WHERE e.raffle_id = :raffle_id
          AND e.tickets > 0
        ORDER BY e.id
    """), {'raffle_id': raffle_id})

    return [
        {
            'entry_id': row[0],
            'user_id': row[1],
            'username': row[2],
            'tickets': row[3],
            'source': row[4],
        }
        for row in result
    ]


def sold_tickets(conn, raffle_id):
    """Total tickets currently held across all entries of a raffle"""
    return conn.execute(text("""
        SELECT COALESCE(SUM(tickets), 0) FROM raffle_entries
        WHERE raffle_id = :raffle_id
    """), {'raffle_id': raffle_id}).scalar()


def check_total_cap(conn, raffle, quantity):
    """Raise if adding quantity tickets would exceed the raffle's total cap"""
    cap = raffle['total_tickets_cap']
    if cap is None:
        return
    sold = sold_tickets(conn, raffle['id'])
    if sold + quantity > cap:
        raise RaffleError(f"Raffle is sold out. Only {max(0, cap - sold)} tickets remaining.")


def ensure_not_drawn(raffle):
    if raffle['status'] in DRAWN_STATUSES:
        raise RaffleStateError("Winners have already been drawn for this raffle")


class TicketManager:
    """Manages raffle tickets for all users"""

    def __init__(self, engine=None, publisher=None):
        self.engine = engine if engine is not None else get_engine()
        self.publisher = publisher or get_publisher()

    @raffle_result("purchasing raffle tickets")
    def purchase_tickets(self, user_id, raffle_id, quantity, now=None):
        """
        Purchase tickets for a raffle with Sweet Coins

        Everything happens in one transaction: the raffle row and then the
        user's balance row are locked, every eligibility rule is checked, the
        cost is debited, the entry is upserted and a ledger row is appended.
        Any failed check rolls the whole thing back.

        Args:
            user_id: Buyer's user ID
            raffle_id: Raffle ID
            quantity: Number of tickets (> 0)
            now: Override the current time (naive UTC)

        Returns:
            dict: {'success': True, 'tickets_purchased', 'new_balance'} or
                  {'success': False, 'error', 'error_kind'}
        """
        if not is_positive_int(quantity):
            raise RaffleError("Quantity must be greater than 0")

        now = now or utcnow()

        with locked_transaction(self.engine) as conn:
            raffle = fetch_raffle(conn, raffle_id, lock=True)

            if raffle['status'] not in PURCHASABLE_STATUSES:
                raise RaffleStateError("Raffle is not active")

            if raffle['hidden_until_start'] and raffle['start_at'] > now:
                raise RaffleStateError("Raffle has not started yet")

            if raffle['end_at'] <= now:
                raise RaffleStateError("Raffle has ended")

            # Lock the balance row before check-then-decrement
            balance_row = conn.execute(text(f"""
                SELECT total_sweet_coins, is_subscriber
                FROM user_sweet_coins
                WHERE user_id = :user_id
                {for_update(conn)}
            """), {'user_id': user_id}).fetchone()

            if not balance_row:
                raise RaffleNotFoundError("User Sweet Coins record not found")

            current_balance, is_subscriber = balance_row[0], bool(balance_row[1])

            if raffle['sub_only'] and not is_subscriber:
                raise RaffleError("This raffle is only available to Kick subscribers")

            max_per_user = raffle['max_tickets_per_user']
            if max_per_user is not None:
                current_tickets = self._entry_tickets(conn, raffle_id, user_id)
                if current_tickets + quantity > max_per_user:
                    raise RaffleError(
                        f"Maximum {max_per_user} tickets per user. "
                        f"You already have {current_tickets} tickets."
                    )

            check_total_cap(conn, raffle, quantity)

            total_cost = raffle['ticket_cost'] * quantity
            if current_balance < total_cost:
                raise RaffleError(
                    f"Not enough Sweet Coins. You have {current_balance} Sweet Coins, "
                    f"need {total_cost} Sweet Coins."
                )

            # Ledger must cover pre-ledger entries before the first new row lands
            if not self._has_ledger_rows(conn, user_id):
                self._backfill_missing(conn, user_id)

            new_balance = conn.execute(timestamp_params(text("""
                UPDATE user_sweet_coins
                SET total_sweet_coins = total_sweet_coins - :cost,
                    updated_at = :now
                WHERE user_id = :user_id
                RETURNING total_sweet_coins
            """), 'now'), {'cost': total_cost, 'now': now, 'user_id': user_id}).scalar()

            self._upsert_entry(conn, raffle_id, user_id, quantity, SOURCE_SYSTEM, now)

            self._record_purchase(conn, user_id, raffle_id, quantity, total_cost, raffle['title'], now)

        logger.info(
            f"✅ User {user_id} bought {quantity} ticket(s) for raffle #{raffle_id} "
            f"({total_cost} Sweet Coins, balance now {new_balance})"
        )
        self.publisher.publish_tickets_purchased(raffle_id, user_id, quantity)

        return {
            'tickets_purchased': quantity,
            'new_balance': new_balance,
        }

    @raffle_result("loading raffle entries")
    def get_entries_snapshot(self, raffle_id):
        """
        Current ticket-range table for a raffle (for UI and overlay display)

        Returns:
            dict: {'success': True, 'raffle_id', 'total_tickets', 'entries': [...]}
        """
        with self.engine.begin() as conn:
            fetch_raffle(conn, raffle_id)
            entries = load_entries(conn, raffle_id)

        ranges, total_tickets = build_entry_ranges(entries)

        return {
            'raffle_id': str(raffle_id),
            'total_tickets': total_tickets,
            'entries': [r.to_dict() for r in ranges],
        }

    @raffle_result("adding manual tickets")
    def add_manual_tickets(self, raffle_id, user_id, tickets, now=None):
        """
        Admin: give a user free tickets (marks the entry as custom)

        The per-user limit is the raffle's max_tickets_per_user, never above
        MANUAL_TICKETS_HARD_CAP. No Sweet Coins are charged.

        Returns:
            dict: {'success': True, 'tickets_added', 'user_tickets'}
        """
        if not is_positive_int(tickets):
            raise RaffleError("Ticket quantity must be greater than 0")

        now = now or utcnow()

        with locked_transaction(self.engine) as conn:
            raffle = fetch_raffle(conn, raffle_id, lock=True)
            ensure_not_drawn(raffle)

            user = conn.execute(text("SELECT id FROM users WHERE id = :user_id"),
                                {'user_id': user_id}).fetchone()
            if not user:
                raise RaffleNotFoundError("User not found")

            current_tickets = self._entry_tickets(conn, raffle_id, user_id)
            cap = min(raffle['max_tickets_per_user'] or MANUAL_TICKETS_HARD_CAP, MANUAL_TICKETS_HARD_CAP)
            if current_tickets + tickets > cap:
                raise RaffleError(
                    f"This user already has {current_tickets} tickets; the maximum per raffle is {cap}."
                )

            check_total_cap(conn, raffle, tickets)

            self._upsert_entry(conn, raffle_id, user_id, tickets, SOURCE_CUSTOM, now, overwrite_source=True)

        logger.info(f"Admin added {tickets} ticket(s) to user {user_id} in raffle #{raffle_id}")
        return {
            'tickets_added': tickets,
            'user_tickets': current_tickets + tickets,
        }

    @raffle_result("removing tickets")
    def remove_tickets(self, raffle_id, entry_id, count=1):
        """
        Admin: take tickets away from an entry; the entry is deleted when none remain

        Returns:
            dict: {'success': True, 'tickets_removed', 'entry_deleted'}
        """
        if not is_positive_int(count):
            raise RaffleError("Count must be positive")

        with locked_transaction(self.engine) as conn:
            raffle = fetch_raffle(conn, raffle_id, lock=True)
            ensure_not_drawn(raffle)
            tickets = self._fetch_entry_tickets(conn, raffle_id, entry_id)

            if tickets <= count:
                conn.execute(text("DELETE FROM raffle_entries WHERE id = :entry_id"),
                             {'entry_id': entry_id})
                removed, deleted = tickets, True
            else:
                conn.execute(text("""
                    UPDATE raffle_entries
                    SET tickets = tickets - :count
                    WHERE id = :entry_id
                """), {'count': count, 'entry_id': entry_id})
                removed, deleted = count, False

        logger.info(f"Removed {removed} ticket(s) from entry {entry_id} in raffle #{raffle_id}")
        return {'tickets_removed': removed, 'entry_deleted': deleted}

    @raffle_result("removing entry")
    def remove_entry(self, raffle_id, entry_id):
        """
        Admin: delete an entry with all of its tickets

        Returns:
            dict: {'success': True, 'tickets_removed'}
        """
        with locked_transaction(self.engine) as conn:
            raffle = fetch_raffle(conn, raffle_id, lock=True)
            ensure_not_drawn(raffle)
            tickets = self._fetch_entry_tickets(conn, raffle_id, entry_id)
            conn.execute(text("DELETE FROM raffle_entries WHERE id = :entry_id"), {'entry_id': entry_id})

        logger.info(f"Removed entry {entry_id} ({tickets} tickets) from raffle #{raffle_id}")
        return {'tickets_removed': tickets}

    def get_user_entries(self, user_id):
        """
        Get every raffle entry a user holds, newest first

        Returns:
            list: Entry dicts with raffle info, total tickets sold and winner flag
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text("""
                    SELECT
                        e.id,
                        e.raffle_id,
                        e.tickets,
                        e.source,
                        e.created_at,
                        r.title,
                        r.prize_description,
                        r.status,
                        r.end_at,
                        r.drawn_at,
                        (SELECT COALESCE(SUM(e2.tickets), 0) FROM raffle_entries e2
                         WHERE e2.raffle_id = e.raffle_id) AS total_tickets_sold,
                        (SELECT COUNT(*) FROM raffle_entries e3
                         WHERE e3.raffle_id = e.raffle_id) AS total_entries,
                        (SELECT COUNT(*) FROM raffle_winners w
                         WHERE w.entry_id = e.id) AS win_count
                    FROM raffle_entries e
                    JOIN raffles r ON r.id = e.raffle_id
                    WHERE e.user_id = :user_id
                    ORDER BY e.created_at DESC, e.id DESC
                """).columns(created_at=DateTime, end_at=DateTime, drawn_at=DateTime),
                    {'user_id': user_id})

                entries = []
                for row in result:
                    entries.append({
                        'id': str(row[0]),
                        'raffle_id': str(row[1]),
                        'tickets': row[2],
                        'source': row[3],
                        'created_at': row[4].isoformat() if row[4] else None,
                        'raffle': {
                            'id': str(row[1]),
                            'title': row[5],
                            'prize_description': row[6],
                            'status': row[7],
                            'end_at': row[8].isoformat() if row[8] else None,
                            'drawn_at': row[9].isoformat() if row[9] else None,
                            'total_tickets_sold': row[10],
                            'total_entries': row[11],
                            'is_winner': row[12] > 0,
                        },
                    })

                return entries

        except Exception as e:
            logger.error(f"Failed to get entries for user {user_id}: {e}")
            return []

    def get_purchase_history(self, user_id, limit=DEFAULT_HISTORY_LIMIT):
        """
        Get a user's purchase ledger rows, newest first

        Returns:
            list: Purchase dicts
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text("""
                    SELECT id, type, quantity, points_spent, item_name, raffle_id, metadata, created_at
                    FROM purchase_transactions
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC, id DESC
                    LIMIT :limit
                """).columns(created_at=DateTime), {'user_id': user_id, 'limit': limit})

                history = []
                for row in result:
                    history.append({
                        'id': str(row[0]),
                        'type': row[1],
                        'quantity': row[2],
                        'sweet_coins_spent': row[3],
                        'item_name': row[4],
                        'raffle_id': str(row[5]) if row[5] is not None else None,
                        'metadata': json.loads(row[6]) if row[6] else None,
                        'created_at': row[7].isoformat() if row[7] else None,
                    })

                return history

        except Exception as e:
            logger.error(f"Failed to get purchase history for user {user_id}: {e}")
            return []

    def backfill_purchase_transactions(self, user_id):
        """
        Add legacy ledger rows for ticket holdings that predate the ledger

        Safe to call repeatedly: only uncovered quantities are inserted.

        Returns:
            int: Number of ledger rows inserted, or None on failure
        """
        try:
            with locked_transaction(self.engine) as conn:
                return self._backfill_missing(conn, user_id)
        except Exception as e:
            logger.error(f"Failed to backfill purchase history for user {user_id}: {e}")
            return None

    def _entry_tickets(self, conn, raffle_id, user_id):
        """Tickets the user already holds in this raffle (0 if no entry)"""
        row = conn.execute(text("""
            SELECT tickets FROM raffle_entries
            WHERE raffle_id = :raffle_id AND user_id = :user_id
        """), {'raffle_id': raffle_id, 'user_id': user_id}).fetchone()
        return row[0] if row else 0

    def _fetch_entry_tickets(self, conn, raffle_id, entry_id):
        row = conn.execute(text("""
            SELECT raffle_id, tickets FROM raffle_entries
            WHERE id = :entry_id
        """), {'entry_id': entry_id}).fetchone()
        if not row or row[0] != raffle_id:
            raise RaffleNotFoundError("Entry not found")
        return row[1]

    def _upsert_entry(self, conn, raffle_id, user_id, tickets, source, now, overwrite_source=False):
        """Create the (raffle, user) entry or add tickets to the existing one"""
        source_update = ", source = excluded.source" if overwrite_source else ""
        conn.execute(timestamp_params(text(f"""
            INSERT INTO raffle_entries (raffle_id, user_id, tickets, source, created_at)
            VALUES (:raffle_id, :user_id, :tickets, :source, :now)
            ON CONFLICT (raffle_id, user_id)
            DO UPDATE SET
                tickets = raffle_entries.tickets + excluded.tickets{source_update}
        """), 'now'), {
            'raffle_id': raffle_id,
            'user_id': user_id,
            'tickets': tickets,
            'source': source,
            'now': now,
        })

    def _record_purchase(self, conn, user_id, raffle_id, quantity, points_spent, item_name,
                         created_at, metadata=None):
        conn.execute(timestamp_params(text("""
            INSERT INTO purchase_transactions
                (user_id, type, quantity, points_spent, item_name, raffle_id, metadata, created_at)
            VALUES
                (:user_id, :type, :quantity, :points_spent, :item_name, :raffle_id, :metadata, :created_at)
        """), 'created_at'), {
            'user_id': user_id,
            'type': PURCHASE_TYPE_RAFFLE_TICKET,
            'quantity': quantity,
            'points_spent': points_spent,
            'item_name': item_name,
            'raffle_id': raffle_id,
            'metadata': json.dumps(metadata) if metadata else None,
            'created_at': created_at,
        })

    def _has_ledger_rows(self, conn, user_id):
        row = conn.execute(text("""
            SELECT 1 FROM purchase_transactions
            WHERE user_id = :user_id
            LIMIT 1
        """), {'user_id': user_id}).fetchone()
        return row is not None

    def _backfill_missing(self, conn, user_id):
        """Insert legacy ledger rows for purchased tickets not yet covered by the ledger"""
        holdings = conn.execute(text("""
            SELECT e.raffle_id, e.tickets, e.created_at, r.title, r.ticket_cost
            FROM raffle_entries e
            JOIN raffles r ON r.id = e.raffle_id
            WHERE e.user_id = :user_id
              AND e.source = :source
        """).columns(created_at=DateTime), {'user_id': user_id, 'source': SOURCE_SYSTEM}).fetchall()

        recorded = conn.execute(text("""
            SELECT raffle_id, COALESCE(SUM(quantity), 0)
            FROM purchase_transactions
            WHERE user_id = :user_id
              AND type = :type
              AND raffle_id IS NOT NULL
            GROUP BY raffle_id
        """), {'user_id': user_id, 'type': PURCHASE_TYPE_RAFFLE_TICKET}).fetchall()
        recorded_by_raffle = {row[0]: int(row[1]) for row in recorded}

        inserted = 0
        for raffle_id, tickets, created_at, title, ticket_cost in holdings:
            remaining = tickets - recorded_by_raffle.get(raffle_id, 0)
            if remaining <= 0:
                continue
            self._record_purchase(
                conn, user_id, raffle_id, remaining, ticket_cost * remaining, title,
                created_at or utcnow(),
                metadata={'legacy': True, 'source': 'raffle_entries'},
            )
            inserted += 1

        if inserted:
            logger.info(f"Backfilled {inserted} legacy purchase row(s) for user {user_id}")
        return inserted
