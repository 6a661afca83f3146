"""
Tests for buying raffle tickets with Sweet Coins
"""

from datetime import timedelta

from sqlalchemy import text

from raffle_system.database import utcnow


def entry_rows(engine, raffle_id):
    with engine.begin() as conn:
        return conn.execute(text("""
            SELECT user_id, tickets, source FROM raffle_entries
            WHERE raffle_id = :raffle_id ORDER BY id
        """), {'raffle_id': raffle_id}).fetchall()


def test_purchase_debits_balance_and_creates_entry(tickets, make_user, make_raffle, balance_of, tickets_of):
    user_id = make_user('alice', balance=100)
    raffle_id = make_raffle(ticket_cost=10)

    result = tickets.purchase_tickets(user_id, raffle_id, 3)

    assert result == {'success': True, 'tickets_purchased': 3, 'new_balance': 70}
    assert balance_of(user_id) == 70
    assert tickets_of(raffle_id, user_id) == 3


def test_repeat_purchases_aggregate_into_one_entry(engine, tickets, make_user, make_raffle, balance_of):
    user_id = make_user('bob', balance=100)
    raffle_id = make_raffle(ticket_cost=5)

    assert tickets.purchase_tickets(user_id, raffle_id, 2)['success']
    assert tickets.purchase_tickets(user_id, raffle_id, 4)['success']

    rows = entry_rows(engine, raffle_id)
    assert len(rows) == 1
    assert rows[0][1] == 6
    assert rows[0][2] == 'system'
    assert balance_of(user_id) == 70


def test_quantity_must_be_positive(tickets, make_user, make_raffle):
    user_id = make_user('carol', balance=100)
    raffle_id = make_raffle()

    for quantity in (0, -2):
        result = tickets.purchase_tickets(user_id, raffle_id, quantity)
        assert result['success'] is False
        assert result['error'] == "Quantity must be greater than 0"
        assert result['error_kind'] == 'validation'


def test_unknown_raffle(tickets, make_user):
    user_id = make_user('dave', balance=100)

    result = tickets.purchase_tickets(user_id, 9999, 1)

    assert result['success'] is False
    assert result['error'] == "Raffle not found"
    assert result['error_kind'] == 'not_found'


def test_missing_balance_record(tickets, make_user, make_raffle):
    user_id = make_user('erin', with_wallet=False)
    raffle_id = make_raffle()

    result = tickets.purchase_tickets(user_id, raffle_id, 1)

    assert result['error'] == "User Sweet Coins record not found"
    assert result['error_kind'] == 'not_found'


def test_per_user_limit_leaves_balance_unchanged(tickets, make_user, make_raffle, balance_of, tickets_of):
    user_id = make_user('frank', balance=1000)
    raffle_id = make_raffle(ticket_cost=10, max_tickets_per_user=5)

    assert tickets.purchase_tickets(user_id, raffle_id, 4)['success']
    result = tickets.purchase_tickets(user_id, raffle_id, 2)

    assert result['success'] is False
    assert result['error'] == "Maximum 5 tickets per user. You already have 4 tickets."
    assert balance_of(user_id) == 960
    assert tickets_of(raffle_id, user_id) == 4


def test_not_enough_sweet_coins(tickets, make_user, make_raffle, balance_of, tickets_of):
    user_id = make_user('gina', balance=25)
    raffle_id = make_raffle(ticket_cost=10)

    result = tickets.purchase_tickets(user_id, raffle_id, 3)

    assert result['success'] is False
    assert result['error'] == "Not enough Sweet Coins. You have 25 Sweet Coins, need 30 Sweet Coins."
    assert balance_of(user_id) == 25
    assert tickets_of(raffle_id, user_id) is None


def test_total_cap(tickets, make_user, make_raffle):
    first = make_user('hank', balance=1000)
    second = make_user('ivy', balance=1000)
    raffle_id = make_raffle(ticket_cost=1, total_tickets_cap=10)

    assert tickets.purchase_tickets(first, raffle_id, 8)['success']
    result = tickets.purchase_tickets(second, raffle_id, 3)

    assert result['error'] == "Raffle is sold out. Only 2 tickets remaining."
    assert tickets.purchase_tickets(second, raffle_id, 2)['success']
    assert tickets.purchase_tickets(second, raffle_id, 1)['error'] == \
        "Raffle is sold out. Only 0 tickets remaining."


def test_sub_only_raffle(tickets, make_user, make_raffle):
    viewer = make_user('jack', balance=100)
    subscriber = make_user('kate', balance=100, is_subscriber=True)
    raffle_id = make_raffle(sub_only=True)

    result = tickets.purchase_tickets(viewer, raffle_id, 1)

    assert result['success'] is False
    assert result['error'] == "This raffle is only available to Kick subscribers"
    assert tickets.purchase_tickets(subscriber, raffle_id, 1)['success']


def test_hidden_until_start_raffle_cannot_be_bought_early(tickets, make_user, make_raffle):
    user_id = make_user('liam', balance=100)
    now = utcnow()
    raffle_id = make_raffle(start_at=now + timedelta(hours=2), end_at=now + timedelta(days=2),
                            hidden_until_start=True)

    result = tickets.purchase_tickets(user_id, raffle_id, 1)

    assert result['error'] == "Raffle has not started yet"
    later = now + timedelta(hours=3)
    assert tickets.purchase_tickets(user_id, raffle_id, 1, now=later)['success']


def test_upcoming_raffle_is_purchasable_when_not_hidden(tickets, make_user, make_raffle):
    user_id = make_user('mia', balance=100)
    now = utcnow()
    raffle_id = make_raffle(start_at=now + timedelta(hours=2), end_at=now + timedelta(days=2))

    assert tickets.purchase_tickets(user_id, raffle_id, 1)['success']


def test_ended_raffle(tickets, make_user, make_raffle, balance_of):
    user_id = make_user('noah', balance=100)
    raffle_id = make_raffle()

    result = tickets.purchase_tickets(user_id, raffle_id, 1, now=utcnow() + timedelta(days=2))

    assert result['error'] == "Raffle has ended"
    assert result['error_kind'] == 'validation'
    assert balance_of(user_id) == 100


def test_completed_raffle_is_not_active(tickets, draw, make_user, make_raffle):
    buyer = make_user('olga', balance=100)
    late = make_user('pete', balance=100)
    raffle_id = make_raffle()
    tickets.purchase_tickets(buyer, raffle_id, 1)
    assert draw.draw_winners(raffle_id)['success']

    result = tickets.purchase_tickets(late, raffle_id, 1)

    assert result['error'] == "Raffle is not active"


def test_validation_order_status_before_balance(tickets, make_user, make_raffle):
    user_id = make_user('quinn', balance=0)
    raffle_id = make_raffle(ticket_cost=10)

    result = tickets.purchase_tickets(user_id, raffle_id, 1, now=utcnow() + timedelta(days=5))

    assert result['error'] == "Raffle has ended"


def test_free_raffle(tickets, make_user, make_raffle, balance_of):
    user_id = make_user('rose', balance=0)
    raffle_id = make_raffle(ticket_cost=0)

    result = tickets.purchase_tickets(user_id, raffle_id, 2)

    assert result['success']
    assert result['new_balance'] == 0
    assert balance_of(user_id) == 0


def test_purchase_is_recorded_in_history(tickets, make_user, make_raffle):
    user_id = make_user('sam', balance=100)
    raffle_id = make_raffle(title='Mystery Box Raffle', ticket_cost=7)

    tickets.purchase_tickets(user_id, raffle_id, 2)
    history = tickets.get_purchase_history(user_id)

    assert len(history) == 1
    assert history[0]['type'] == 'raffle_ticket'
    assert history[0]['quantity'] == 2
    assert history[0]['sweet_coins_spent'] == 14
    assert history[0]['item_name'] == 'Mystery Box Raffle'
    assert history[0]['raffle_id'] == str(raffle_id)
    assert history[0]['metadata'] is None


def test_failed_purchase_leaves_no_history(tickets, make_user, make_raffle):
    user_id = make_user('tina', balance=5)
    raffle_id = make_raffle(ticket_cost=10)

    tickets.purchase_tickets(user_id, raffle_id, 1)

    assert tickets.get_purchase_history(user_id) == []


def test_first_purchase_backfills_legacy_entries(engine, tickets, make_user, make_raffle):
    user_id = make_user('uma', balance=100)
    old_raffle = make_raffle(title='Old Raffle', ticket_cost=3)
    new_raffle = make_raffle(title='New Raffle', ticket_cost=1)
    with engine.begin() as conn:
        conn.execute(text("""
            INSERT INTO raffle_entries (raffle_id, user_id, tickets, source)
            VALUES (:raffle_id, :user_id, 4, 'system')
        """), {'raffle_id': old_raffle, 'user_id': user_id})

    tickets.purchase_tickets(user_id, new_raffle, 1)
    history = tickets.get_purchase_history(user_id)

    legacy = [h for h in history if h['metadata']]
    assert len(history) == 2
    assert len(legacy) == 1
    assert legacy[0]['raffle_id'] == str(old_raffle)
    assert legacy[0]['quantity'] == 4
    assert legacy[0]['sweet_coins_spent'] == 12
    assert legacy[0]['metadata'] == {'legacy': True, 'source': 'raffle_entries'}


def test_backfill_is_idempotent_and_skips_custom_entries(engine, tickets, make_user, make_raffle):
    user_id = make_user('vic', balance=100)
    raffle_id = make_raffle(ticket_cost=2)
    gift_raffle = make_raffle(ticket_cost=2)
    with engine.begin() as conn:
        conn.execute(text("""
            INSERT INTO raffle_entries (raffle_id, user_id, tickets, source)
            VALUES (:raffle_id, :user_id, 3, 'system')
        """), {'raffle_id': raffle_id, 'user_id': user_id})
        conn.execute(text("""
            INSERT INTO raffle_entries (raffle_id, user_id, tickets, source)
            VALUES (:raffle_id, :user_id, 5, 'custom')
        """), {'raffle_id': gift_raffle, 'user_id': user_id})

    assert tickets.backfill_purchase_transactions(user_id) == 1
    assert tickets.backfill_purchase_transactions(user_id) == 0
    assert len(tickets.get_purchase_history(user_id)) == 1


def test_history_limit_and_order(tickets, make_user, make_raffle):
    user_id = make_user('wes', balance=1000)
    raffle_id = make_raffle(ticket_cost=1)
    now = utcnow()
    for minute in range(5):
        tickets.purchase_tickets(user_id, raffle_id, minute + 1, now=now + timedelta(minutes=minute))

    history = tickets.get_purchase_history(user_id, limit=3)

    assert [h['quantity'] for h in history] == [5, 4, 3]


def test_purchase_publishes_event(tickets, publisher, make_user, make_raffle):
    user_id = make_user('xena', balance=100)
    raffle_id = make_raffle()

    tickets.purchase_tickets(user_id, raffle_id, 2)
    tickets.purchase_tickets(user_id, raffle_id, 0)

    assert publisher.events == [('tickets_purchased', raffle_id, user_id, 2)]


def test_fractional_and_boolean_quantities_are_rejected(tickets, make_user, make_raffle, balance_of, tickets_of):
    user_id = make_user('yuri', balance=100)
    raffle_id = make_raffle(ticket_cost=10)

    for quantity in (1.5, 2.0, True, '2', None):
        result = tickets.purchase_tickets(user_id, raffle_id, quantity)
        assert result['success'] is False
        assert result['error'] == "Quantity must be greater than 0"
        assert result['error_kind'] == 'validation'

    assert balance_of(user_id) == 100
    assert tickets_of(raffle_id, user_id) is None
    assert tickets.get_purchase_history(user_id) == []
