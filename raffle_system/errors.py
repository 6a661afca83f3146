"""
Raffle error types

RaffleError and its subclasses carry a user-facing reason and are returned
verbatim to callers. RaffleIntegrityError means ranges, totals or persisted
state drifted out of sync; the surrounding transaction must be abandoned.
"""


class RaffleError(ValueError):
    """A request the raffle engine refuses (bad input, limits, balance)."""

    kind = "validation"


class RaffleNotFoundError(RaffleError):
    kind = "not_found"


class RaffleStateError(RaffleError):
    """The raffle is in the wrong state for the operation (ended, already drawn)."""


class RaffleIntegrityError(RuntimeError):
    """Internal invariant violation. Never shown to users in detail."""

    kind = "internal"
