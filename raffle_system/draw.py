"""
Raffle Draw Logic
Implements provably fair multi-winner drawing over ticket ranges using HMAC-SHA256
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import text

from utils.db_context import get_engine, locked_transaction
from utils.error_helpers import raffle_result
from utils.provably_fair import deterministic_random_int, generate_draw_seed
from utils.redis_publisher import get_publisher

from .config import (
    DRAW_MAX_ATTEMPTS_FACTOR,
    DRAW_MIN_ATTEMPTS,
    DRAW_SEED_BYTES,
    DRAWN_STATUSES,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
)
from .database import fetch_raffle, is_positive_int, timestamp_params, utcnow
from .errors import RaffleError, RaffleIntegrityError, RaffleStateError
from .ranges import EntryRange, build_entry_ranges, find_entry_for_index
from .tickets import load_entries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Winner:
    entry_id: int
    user_id: int
    username: str
    tickets: int
    selected_ticket_index: int
    ticket_range_start: int
    ticket_range_end: int
    spin_number: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': str(self.entry_id),
            'user_id': str(self.user_id),
            'username': self.username,
            'tickets': self.tickets,
            'selected_ticket_index': self.selected_ticket_index,
            'ticket_range_start': self.ticket_range_start,
            'ticket_range_end': self.ticket_range_end,
            'spin_number': self.spin_number,
        }


def max_draw_attempts(total_tickets: int) -> int:
    return max(total_tickets * DRAW_MAX_ATTEMPTS_FACTOR, DRAW_MIN_ATTEMPTS)


def select_winners(seed: str, ranges: List[EntryRange], total_tickets: int,
                   number_of_winners: int, max_attempts: int = None) -> Tuple[List[Winner], int]:
    """
    Pick winners by replaying (seed, counter) pairs from counter 0 upward.

    Each attempt draws index = HMAC(seed, counter) mod total_tickets and looks up
    its owner. Unless there are more winners than participants, an owner who
    already won is skipped: the attempt consumes the counter but records no
    spin. Replaying the same seed over the same ranges gives the same list.

    Args:
        seed: Draw seed
        ranges: Entry ranges from build_entry_ranges
        total_tickets: Total from build_entry_ranges
        number_of_winners: Spins to record (> 0)
        max_attempts: Attempt budget (defaults to max_draw_attempts(total_tickets))

    Returns:
        tuple: (winners, attempts used)

    Raises:
        RaffleIntegrityError: Ranges and total disagree, or the budget ran out
    """
    if not is_positive_int(number_of_winners):
        raise ValueError("number_of_winners must be a positive integer")
    if total_tickets <= 0 or not ranges:
        raise RaffleIntegrityError("Cannot draw from a raffle with no tickets")
    if ranges[-1].range_end != total_tickets:
        raise RaffleIntegrityError(
            f"Ranges end at {ranges[-1].range_end} but total tickets is {total_tickets}"
        )

    participants = sum(1 for r in ranges if r.tickets > 0)
    allow_duplicates = number_of_winners > participants
    max_attempts = max_attempts or max_draw_attempts(total_tickets)

    winners = []
    selected_entry_ids = set()
    counter = 0

    while len(winners) < number_of_winners:
        if counter >= max_attempts:
            raise RaffleIntegrityError(
                f"Draw gave up after {counter} attempts with {len(winners)}/{number_of_winners} winners"
            )

        index = deterministic_random_int(seed, counter, total_tickets)
        counter += 1

        entry_range = find_entry_for_index(ranges, index)
        if entry_range is None:
            raise RaffleIntegrityError(f"Ticket index {index} is outside every entry range")

        if not allow_duplicates and entry_range.entry_id in selected_entry_ids:
            continue

        selected_entry_ids.add(entry_range.entry_id)
        winners.append(Winner(
            entry_id=entry_range.entry_id,
            user_id=entry_range.user_id,
            username=entry_range.username,
            tickets=entry_range.tickets,
            selected_ticket_index=index,
            ticket_range_start=entry_range.range_start,
            ticket_range_end=entry_range.range_end,
            spin_number=len(winners) + 1,
        ))

    return winners, counter


class RaffleDraw:
    """Handles raffle drawing and winner selection"""

    def __init__(self, engine=None, publisher=None):
        self.engine = engine if engine is not None else get_engine()
        self.publisher = publisher or get_publisher()

    @raffle_result("drawing winners")
    def draw_winners(self, raffle_id, number_of_winners=None, drawn_by=None, now=None):
        """
        Draw winners for a raffle (one-shot)

        The raffle row is locked for the whole read-ranges-draw-persist sequence,
        so no purchase can land between building the ranges and committing.
        The seed is stored with the raffle and published with the result; with
        the entries it reproduces every winner.

        Args:
            raffle_id: Raffle ID
            number_of_winners: Winners to draw (defaults to the raffle's number_of_winners)
            drawn_by: Admin user ID, for the log
            now: Override the draw time (naive UTC)

        Returns:
            dict: {'success': True, 'winners', 'draw_seed', 'total_tickets', 'spins'} or
                  {'success': False, 'error', 'error_kind'}
        """
        if number_of_winners is not None and not is_positive_int(number_of_winners):
            raise RaffleError("Number of winners must be greater than 0")

        now = now or utcnow()

        with locked_transaction(self.engine) as conn:
            raffle = fetch_raffle(conn, raffle_id, lock=True)

            if raffle['status'] in DRAWN_STATUSES:
                raise RaffleStateError("Winners have already been drawn for this raffle")

            number_of_winners = number_of_winners or raffle['number_of_winners'] or 1

            entries = load_entries(conn, raffle_id)
            if not entries:
                raise RaffleStateError("No entries found for this raffle")

            ranges, total_tickets = build_entry_ranges(entries)
            if total_tickets == 0:
                raise RaffleStateError("No tickets found for this raffle")

            draw_seed = generate_draw_seed(DRAW_SEED_BYTES)

            logger.info(f"🎲 Drawing raffle #{raffle_id}")
            logger.info(f"   Total tickets: {total_tickets}")
            logger.info(f"   Total participants: {len(ranges)}")
            logger.info(f"   Winners requested: {number_of_winners}")

            winners, spins = select_winners(draw_seed, ranges, total_tickets, number_of_winners)

            # Compare-and-set on status on top of the row lock
            updated = conn.execute(timestamp_params(text("""
                UPDATE raffles
                SET status = :completed,
                    draw_seed = :draw_seed,
                    drawn_at = :drawn_at,
                    draw_total_tickets = :total_tickets
                WHERE id = :raffle_id
                  AND status NOT IN ('completed', 'drawing')
            """), 'drawn_at'), {
                'completed': STATUS_COMPLETED,
                'draw_seed': draw_seed,
                'drawn_at': now,
                'total_tickets': total_tickets,
                'raffle_id': raffle_id,
            }).rowcount

            if updated != 1:
                raise RaffleStateError("Winners have already been drawn for this raffle")

            for winner in winners:
                conn.execute(timestamp_params(text("""
                    INSERT INTO raffle_winners
                        (raffle_id, entry_id, user_id, selected_ticket_index,
                         ticket_range_start, ticket_range_end, spin_number, selected_at)
                    VALUES
                        (:raffle_id, :entry_id, :user_id, :selected_ticket_index,
                         :ticket_range_start, :ticket_range_end, :spin_number, :selected_at)
                """), 'selected_at'), {
                    'raffle_id': raffle_id,
                    'entry_id': winner.entry_id,
                    'user_id': winner.user_id,
                    'selected_ticket_index': winner.selected_ticket_index,
                    'ticket_range_start': winner.ticket_range_start,
                    'ticket_range_end': winner.ticket_range_end,
                    'spin_number': winner.spin_number,
                    'selected_at': now,
                })

        logger.info(f"   Draw seed: {draw_seed}")
        logger.info(f"   Attempts used: {spins}")
        for winner in winners:
            logger.info(
                f"🎉 Spin {winner.spin_number}: {winner.username} "
                f"(ticket #{winner.selected_ticket_index}, {winner.tickets}/{total_tickets} tickets)"
            )
        if drawn_by is not None:
            logger.info(f"   Drawn by admin {drawn_by}")

        winner_dicts = [w.to_dict() for w in winners]
        self.publisher.publish_winners_drawn(raffle_id, draw_seed, total_tickets, winner_dicts)

        return {
            'winners': winner_dicts,
            'draw_seed': draw_seed,
            'total_tickets': total_tickets,
            'spins': spins,
        }

    @raffle_result("resetting draw")
    def reset_draw(self, raffle_id):
        """
        Admin: undo a draw so the raffle can be drawn again

        Deletes the winners and clears draw_seed, drawn_at and draw_total_tickets.
        Raffles that were never drawn are rejected and keep their status.

        Returns:
            dict: {'success': True, 'winners_removed'}
        """
        with locked_transaction(self.engine) as conn:
            raffle = fetch_raffle(conn, raffle_id, lock=True)
            if raffle['status'] not in DRAWN_STATUSES:
                raise RaffleStateError("Winners have not been drawn for this raffle")

            removed = conn.execute(text("DELETE FROM raffle_winners WHERE raffle_id = :raffle_id"),
                                   {'raffle_id': raffle_id}).rowcount

            conn.execute(text("""
                UPDATE raffles
                SET draw_seed = NULL,
                    drawn_at = NULL,
                    draw_total_tickets = NULL,
                    status = :active
                WHERE id = :raffle_id
            """), {'active': STATUS_ACTIVE, 'raffle_id': raffle_id})

        logger.info(f"♻️ Reset draw for raffle #{raffle_id} ({removed} winner(s) removed)")
        return {'winners_removed': removed}

    @raffle_result("loading winners")
    def get_winners(self, raffle_id):
        """
        Get the persisted winners of a raffle in spin order

        Returns:
            dict: {'success': True, 'raffle_id', 'title', 'status', 'drawn_at', 'draw_seed',
                   'total_tickets', 'winners'}
        """
        with self.engine.begin() as conn:
            raffle = fetch_raffle(conn, raffle_id)
            winners = self._load_winners(conn, raffle_id)

        return {
            'raffle_id': str(raffle_id),
            'title': raffle['title'],
            'status': raffle['status'],
            'drawn_at': raffle['drawn_at'].isoformat() if raffle['drawn_at'] else None,
            'draw_seed': raffle['draw_seed'],
            'total_tickets': raffle['draw_total_tickets'],
            'winners': [w.to_dict() for w in winners],
        }

    @raffle_result("verifying draw")
    def verify_draw(self, raffle_id):
        """
        Replay a completed draw from its stored seed and compare with the stored winners

        The replay uses the entries as they are now; admin ticket edits are
        blocked after a draw, so a completed raffle replays exactly.

        Returns:
            dict: {'success': True, 'verified', 'mismatches', 'draw_seed', 'total_tickets', 'winners'}
        """
        with self.engine.begin() as conn:
            raffle = fetch_raffle(conn, raffle_id)
            if raffle['status'] != STATUS_COMPLETED or not raffle['draw_seed']:
                raise RaffleStateError("Winners have not been drawn for this raffle")

            stored = self._load_winners(conn, raffle_id)
            entries = load_entries(conn, raffle_id)

        draw_seed = raffle['draw_seed']
        ranges, total_tickets = build_entry_ranges(entries)
        mismatches = []

        if raffle['draw_total_tickets'] is not None and total_tickets != raffle['draw_total_tickets']:
            mismatches.append(
                f"Total tickets changed since the draw ({raffle['draw_total_tickets']} -> {total_tickets})"
            )
            replayed = []
        elif not stored:
            mismatches.append("No stored winners")
            replayed = []
        else:
            replayed, _ = select_winners(draw_seed, ranges, total_tickets, len(stored))
            for expected, actual in zip(stored, replayed):
                if (expected.entry_id, expected.selected_ticket_index) != (actual.entry_id, actual.selected_ticket_index):
                    mismatches.append(
                        f"Spin {expected.spin_number}: stored entry {expected.entry_id} "
                        f"(ticket #{expected.selected_ticket_index}), replay gives entry "
                        f"{actual.entry_id} (ticket #{actual.selected_ticket_index})"
                    )

        if mismatches:
            logger.warning(f"Draw verification failed for raffle #{raffle_id}: {mismatches}")

        return {
            'verified': not mismatches,
            'mismatches': mismatches,
            'draw_seed': draw_seed,
            'total_tickets': total_tickets,
            'winners': [w.to_dict() for w in replayed],
        }

    def get_win_probability(self, user_id, raffle_id):
        """
        Calculate a user's chance of being picked on a single spin

        Returns:
            dict: Win probability info or None
        """
        try:
            with self.engine.begin() as conn:
                user_row = conn.execute(text("""
                    SELECT tickets FROM raffle_entries
                    WHERE raffle_id = :raffle_id AND user_id = :user_id
                """), {'raffle_id': raffle_id, 'user_id': user_id}).fetchone()

                if not user_row or user_row[0] == 0:
                    return None

                user_tickets = user_row[0]

                total_tickets = conn.execute(text("""
                    SELECT COALESCE(SUM(tickets), 0) FROM raffle_entries
                    WHERE raffle_id = :raffle_id
                """), {'raffle_id': raffle_id}).scalar()

            if total_tickets == 0:
                return None

            return {
                'user_tickets': user_tickets,
                'total_tickets': total_tickets,
                'probability_percent': (user_tickets / total_tickets) * 100,
                'odds': f"{user_tickets}/{total_tickets}",
            }

        except Exception as e:
            logger.error(f"Failed to calculate win probability: {e}")
            return None

    def simulate_draw(self, raffle_id, num_simulations=1000):
        """
        Simulate many single-winner draws with fresh seeds to check fairness

        Nothing is persisted.

        Returns:
            dict: Simulation results or None
        """
        try:
            with self.engine.begin() as conn:
                entries = load_entries(conn, raffle_id)

            if not entries:
                return None

            ranges, total_tickets = build_entry_ranges(entries)
            wins = {r.entry_id: 0 for r in ranges}

            for _ in range(num_simulations):
                index = deterministic_random_int(generate_draw_seed(DRAW_SEED_BYTES), 0, total_tickets)
                wins[find_entry_for_index(ranges, index).entry_id] += 1

            results = []
            for entry_range in ranges:
                expected_wins = (entry_range.tickets / total_tickets) * num_simulations
                actual_wins = wins[entry_range.entry_id]
                variance = ((actual_wins - expected_wins) / expected_wins * 100) if expected_wins > 0 else 0

                results.append({
                    'username': entry_range.username,
                    'tickets': entry_range.tickets,
                    'expected_wins': expected_wins,
                    'actual_wins': actual_wins,
                    'variance_percent': variance,
                })

            return {
                'num_simulations': num_simulations,
                'total_tickets': total_tickets,
                'participants': len(ranges),
                'results': results,
            }

        except Exception as e:
            logger.error(f"Failed to simulate draw: {e}")
            return None

    def _load_winners(self, conn, raffle_id):
        result = conn.execute(text("""
            SELECT w.entry_id, w.user_id, u.username, e.tickets, w.selected_ticket_index,
                   w.ticket_range_start, w.ticket_range_end, w.spin_number
            FROM raffle_winners w
            JOIN raffle_entries e ON e.id = w.entry_id
            JOIN users u ON u.id = w.user_id
            WHERE w.raffle_id = :raffle_id
            ORDER BY w.spin_number
        """), {'raffle_id': raffle_id})

        return [
            Winner(
                entry_id=row[0],
                user_id=row[1],
                username=row[2],
                tickets=row[3],
                selected_ticket_index=row[4],
                ticket_range_start=row[5],
                ticket_range_end=row[6],
                spin_number=row[7],
            )
            for row in result
        ]
