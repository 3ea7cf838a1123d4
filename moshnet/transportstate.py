"""A protocol state tagged with its number and the time it was recorded."""

import copy
from dataclasses import dataclass
from typing import Any

__all__ = ["TimestampedState"]


@dataclass
class TimestampedState:
    """A state together with its sequence number and timestamp (ms)."""

    timestamp: int
    num: int
    state: Any

    def copy(self) -> "TimestampedState":
        """Return an independent copy, including a copy of the state."""
        return TimestampedState(self.timestamp, self.num, copy.deepcopy(self.state))