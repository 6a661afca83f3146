"""
Tests for winner selection over ticket ranges (no database)
"""

import pytest

from raffle_system.draw import max_draw_attempts, select_winners
from raffle_system.errors import RaffleIntegrityError
from raffle_system.ranges import build_entry_ranges
from utils.provably_fair import deterministic_random_int

SEED = 'a3f1c2' * 10 + 'beef'


def ranges_for(counts):
    return build_entry_ranges([
        {'entry_id': i + 1, 'user_id': 500 + i, 'username': f'player{i}', 'tickets': count}
        for i, count in enumerate(counts)
    ])


def test_two_participants_two_winners_are_distinct():
    ranges, total = ranges_for([1, 1])

    winners, attempts = select_winners(SEED, ranges, total, 2)

    assert sorted(w.entry_id for w in winners) == [1, 2]
    assert [w.spin_number for w in winners] == [1, 2]
    assert attempts >= 2


def test_first_spin_uses_counter_zero():
    ranges, total = ranges_for([3, 2, 5])

    winners, attempts = select_winners(SEED, ranges, total, 1)

    index = deterministic_random_int(SEED, 0, total)
    assert attempts == 1
    assert winners[0].selected_ticket_index == index
    assert winners[0].ticket_range_start <= index < winners[0].ticket_range_end


def test_no_duplicate_winners_when_enough_participants():
    ranges, total = ranges_for([50, 1, 1, 1, 1, 1])

    winners, _ = select_winners(SEED, ranges, total, 6)

    assert len({w.entry_id for w in winners}) == 6


def test_duplicates_allowed_when_more_winners_than_participants():
    ranges, total = ranges_for([2, 3])

    winners, attempts = select_winners(SEED, ranges, total, 5)

    assert len(winners) == 5
    assert attempts == 5
    assert {w.entry_id for w in winners} <= {1, 2}
    for counter, winner in enumerate(winners):
        assert winner.selected_ticket_index == deterministic_random_int(SEED, counter, total)


def test_replay_is_identical():
    ranges, total = ranges_for([7, 1, 12, 4, 9])

    first = select_winners(SEED, ranges, total, 3)
    second = select_winners(SEED, ranges, total, 3)

    assert first == second


def test_winner_records_match_their_range():
    ranges, total = ranges_for([4, 6, 2])

    winners, _ = select_winners(SEED, ranges, total, 3)

    for winner in winners:
        owner = next(r for r in ranges if r.entry_id == winner.entry_id)
        assert winner.ticket_range_start == owner.range_start
        assert winner.ticket_range_end == owner.range_end
        assert winner.tickets == owner.tickets
        assert winner.username == owner.username
        assert winner.to_dict()['entry_id'] == str(owner.entry_id)


def test_attempt_budget_exhausted_raises():
    ranges, total = ranges_for([1, 1])

    with pytest.raises(RaffleIntegrityError):
        select_winners(SEED, ranges, total, 2, max_attempts=1)


def test_total_mismatch_raises():
    ranges, total = ranges_for([3, 3])

    with pytest.raises(RaffleIntegrityError):
        select_winners(SEED, ranges, total + 1, 1)


def test_empty_ranges_raise():
    with pytest.raises(RaffleIntegrityError):
        select_winners(SEED, [], 0, 1)


def test_non_positive_winner_count_raises():
    ranges, total = ranges_for([1])

    with pytest.raises(ValueError):
        select_winners(SEED, ranges, total, 0)


def test_max_draw_attempts():
    assert max_draw_attempts(1) == 1000
    assert max_draw_attempts(100) == 1000
    assert max_draw_attempts(5000) == 50000


@pytest.mark.parametrize("number_of_winners", [2.5, True])
def test_non_integer_winner_count_raises(number_of_winners):
    ranges, total = ranges_for([1, 1, 1])

    with pytest.raises(ValueError):
        select_winners(SEED, ranges, total, number_of_winners)
