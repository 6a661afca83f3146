"""
Shared fixtures for raffle engine tests
Each test gets its own SQLite file database with the full schema
"""

from datetime import timedelta

import pytest
from sqlalchemy import text

from raffle_system.database import create_raffle, setup_raffle_database, utcnow
from raffle_system.draw import RaffleDraw
from raffle_system.tickets import TicketManager
from utils.db_context import create_raffle_engine


class RecordingPublisher:
    """Stands in for the Redis publisher and remembers what was published"""

    def __init__(self):
        self.events = []

    def publish_winners_drawn(self, raffle_id, draw_seed, total_tickets, winners):
        self.events.append(('winners_drawn', raffle_id, draw_seed, total_tickets, winners))
        return True

    def publish_tickets_purchased(self, raffle_id, user_id, quantity):
        self.events.append(('tickets_purchased', raffle_id, user_id, quantity))
        return True


def add_user(engine, username, balance=0, is_subscriber=False, with_wallet=True):
    with engine.begin() as conn:
        user_id = conn.execute(text("""
            INSERT INTO users (username) VALUES (:username)
            RETURNING id
        """), {'username': username}).scalar()
        if with_wallet:
            conn.execute(text("""
                INSERT INTO user_sweet_coins (user_id, total_sweet_coins, is_subscriber)
                VALUES (:user_id, :balance, :is_subscriber)
            """), {'user_id': user_id, 'balance': balance, 'is_subscriber': is_subscriber})
    return user_id


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)


@pytest.fixture
def engine(tmp_path):
    engine = create_raffle_engine(f"sqlite:///{tmp_path / 'raffles.db'}", lock_timeout=30)
    assert setup_raffle_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def tickets(engine, publisher):
    return TicketManager(engine, publisher=publisher)


@pytest.fixture
def draw(engine, publisher):
    return RaffleDraw(engine, publisher=publisher)


@pytest.fixture
def make_user(engine):
    def _make(username, balance=0, is_subscriber=False, with_wallet=True):
        return add_user(engine, username, balance, is_subscriber, with_wallet)
    return _make


@pytest.fixture
def make_raffle(engine):
    def _make(**overrides):
        now = utcnow()
        params = {
            'title': 'Test Raffle',
            'prize_description': '1x Mystery Box',
            'ticket_cost': 10,
            'start_at': now - timedelta(hours=1),
            'end_at': now + timedelta(days=1),
        }
        params.update(overrides)
        return create_raffle(engine, **params)
    return _make


@pytest.fixture
def balance_of(engine):
    def _balance(user_id):
        with engine.begin() as conn:
            return conn.execute(text("""
                SELECT total_sweet_coins FROM user_sweet_coins WHERE user_id = :user_id
            """), {'user_id': user_id}).scalar()
    return _balance


@pytest.fixture
def tickets_of(engine):
    def _tickets(raffle_id, user_id):
        with engine.begin() as conn:
            return conn.execute(text("""
                SELECT tickets FROM raffle_entries
                WHERE raffle_id = :raffle_id AND user_id = :user_id
            """), {'raffle_id': raffle_id, 'user_id': user_id}).scalar()
    return _tickets
