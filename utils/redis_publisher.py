"""
Redis Publisher for Raffle Events
Publishes draw and purchase events to a Redis channel for overlays and dashboards
"""

import json
import logging
import os

import redis

from raffle_system.config import REDIS_RAFFLE_CHANNEL

logger = logging.getLogger(__name__)


class RaffleRedisPublisher:
    def __init__(self, redis_url=None, channel=REDIS_RAFFLE_CHANNEL):
        self.channel = channel
        self.client = None
        self.enabled = False

        redis_url = redis_url or os.getenv('REDIS_URL')
        if not redis_url:
            logger.debug("REDIS_URL not set, raffle events will not be published")
            return

        if '://' not in redis_url:
            redis_url = f'redis://{redis_url}'
        try:
            self.client = redis.from_url(redis_url, decode_responses=True)
            self.client.ping()
            self.enabled = True
            logger.info("✅ Raffle Redis publisher connected")
        except redis.RedisError as e:
            logger.warning(f"⚠️ Redis unavailable for raffle publisher: {e}")

    def publish(self, action, data=None):
        """Publish an event; returns False when disabled or on failure"""
        if not self.enabled:
            return False

        try:
            message = json.dumps({
                'action': action,
                'data': data or {}
            })
            self.client.publish(self.channel, message)
            logger.debug(f"📤 Published to {self.channel}: {action}")
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Failed to publish to {self.channel}: {e}")
            return False

    def publish_winners_drawn(self, raffle_id, draw_seed, total_tickets, winners):
        """Publish a completed draw (winners are EntryRange-style dicts with string ids)"""
        return self.publish('winners_drawn', {
            'raffle_id': str(raffle_id),
            'draw_seed': draw_seed,
            'total_tickets': total_tickets,
            'winners': winners,
        })

    def publish_tickets_purchased(self, raffle_id, user_id, quantity):
        """Publish a ticket purchase so live entry tables can refresh"""
        return self.publish('tickets_purchased', {
            'raffle_id': str(raffle_id),
            'user_id': str(user_id),
            'quantity': quantity,
        })


_publisher = None


def get_publisher():
    """Shared publisher, connected on first use"""
    global _publisher
    if _publisher is None:
        _publisher = RaffleRedisPublisher()
    return _publisher
