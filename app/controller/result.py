from dataclasses import dataclass
from enum import Enum


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NOOP = "noop"


@dataclass(frozen=True)
class MutationResult:
    """What happened to an add/toggle/delete request."""

    outcome: Outcome
    error: str | None = None

    @classmethod
    def success(cls) -> "MutationResult":
        return cls(Outcome.SUCCESS)

    @classmethod
    def failure(cls, error: Exception | str) -> "MutationResult":
        return cls(Outcome.FAILURE, str(error))

    @classmethod
    def noop(cls) -> "MutationResult":
        return cls(Outcome.NOOP)

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILURE
