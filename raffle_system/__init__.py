"""
Raffle System Package
Sweet Coins ticket raffles with provably fair multi-winner draws

TicketManager (raffle_system.tickets) and RaffleDraw (raffle_system.draw) are
imported from their modules; they depend on utils, which imports this package.
"""

__version__ = "1.0.0"

# Export leaf components
from .database import create_raffle, get_raffle, setup_raffle_database
from .errors import RaffleError, RaffleIntegrityError, RaffleNotFoundError, RaffleStateError
from .ranges import EntryRange, build_entry_ranges, find_entry_for_index

__all__ = [
    'EntryRange',
    'build_entry_ranges',
    'find_entry_for_index',
    'create_raffle',
    'get_raffle',
    'setup_raffle_database',
    'RaffleError',
    'RaffleIntegrityError',
    'RaffleNotFoundError',
    'RaffleStateError',
]
