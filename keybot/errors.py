"""Domain errors raised by the round and claim operations.

Every error here is recoverable by the caller; the bot and the admin panel
turn them into messages. Driver failures arrive as ``StorageError``.
"""


class GiveawayError(Exception):
    pass


class RoundConflict(GiveawayError):
    """A round is already active."""


class NotFound(GiveawayError):
    pass


class AlreadyCompleted(GiveawayError):
    pass


class NoActiveRound(GiveawayError):
    pass


class AgeRequirementNotMet(GiveawayError):
    def __init__(self, age_days: int, age_bound: int):
        super().__init__(f"account is {age_days} days old, {age_bound} required")
        self.age_days = age_days
        self.age_bound = age_bound


class AlreadyClaimedThisRound(GiveawayError):
    pass


class NoKeysAvailable(GiveawayError):
    pass


class StorageError(GiveawayError):
    """Connectivity or constraint failure in the underlying store."""


class ConfigError(ValueError):
    pass
