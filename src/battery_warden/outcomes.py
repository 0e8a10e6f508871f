"""Shared result enums for bridges and the enforcement engine."""

from enum import Enum


class ExemptionState(Enum):
    """Whether the OS currently exempts the package from idle restrictions.

    Always derived from a fresh query; never cached.
    """

    GRANTED = "granted"
    DENIED = "denied"

    @classmethod
    def from_bool(cls, exempt: bool) -> "ExemptionState":
        return cls.GRANTED if exempt else cls.DENIED


class StrategyOutcome(Enum):
    """Tri-state result of one cascade strategy.

    NOT_APPLICABLE means the strategy's preconditions were not met on this
    device; it is neither a success nor a failed attempt.
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"
