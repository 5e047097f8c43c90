"""
Commitment Gate
===============

Optional per-kind ordering guard between the demultiplexer and the consumer.

Policies:
    PASS_THROUGH   - admit everything (default)
    MONOTONIC_SLOT - drop an update whose slot is lower than the highest
                     slot already admitted for its kind

Design Rules:
    - Never rewrites payloads; an update is admitted as-is or dropped
    - Ping, pong and unknown updates are never gated
    - Drops are counted and logged, not raised
    - State belongs to one session; reset() starts a fresh window

Example:
    gate = CommitmentGate({UpdateKind.SLOT: GatePolicy.MONOTONIC_SLOT})
    for update in updates:
        if gate.admit(update) is not None:
            deliver(update)
"""

import logging
from enum import Enum
from typing import Dict, Mapping, Optional

from geyser_stream.models.update import Update, UpdateKind


logger = logging.getLogger(__name__)


class GatePolicy(str, Enum):
    """Admission policy for one update kind."""

    PASS_THROUGH = "pass_through"
    MONOTONIC_SLOT = "monotonic_slot"


_UNGATED = frozenset({UpdateKind.PING, UpdateKind.PONG, UpdateKind.UNKNOWN})


class GateMetrics:
    """Counters for CommitmentGate observability."""

    __slots__ = ("admitted", "dropped", "dropped_by_kind")

    def __init__(self) -> None:
        self.admitted: int = 0
        self.dropped: int = 0
        self.dropped_by_kind: Dict[str, int] = {}

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "admitted": self.admitted,
            "dropped": self.dropped,
            "dropped_by_kind": dict(self.dropped_by_kind),
        }


class CommitmentGate:
    """
    Per-kind slot ordering filter.

    Attributes:
        policies: Policy per UpdateKind (missing kinds pass through)
        reset_on_reconnect: Whether the owner should call reset() per session
        metrics: Admission/drop counters
    """

    def __init__(
        self,
        policies: Optional[Mapping[UpdateKind, GatePolicy]] = None,
        reset_on_reconnect: bool = True,
    ) -> None:
        self.policies: Dict[UpdateKind, GatePolicy] = {
            UpdateKind(kind): GatePolicy(policy)
            for kind, policy in (policies or {}).items()
        }
        self.reset_on_reconnect = reset_on_reconnect
        self.metrics = GateMetrics()
        self._last_slot: Dict[UpdateKind, int] = {}

    def policy_for(self, kind: UpdateKind) -> GatePolicy:
        """Effective policy for a kind."""
        return self.policies.get(kind, GatePolicy.PASS_THROUGH)

    def last_slot_seen(self, kind: UpdateKind) -> Optional[int]:
        """Highest slot admitted for a monotonic kind, if any."""
        return self._last_slot.get(kind)

    def admit(self, update: Update) -> Optional[Update]:
        """
        Decide whether an update reaches the consumer.

        Args:
            update: Classified update

        Returns:
            The same update if admitted, None if dropped.
        """
        if update.kind in _UNGATED:
            return update

        if self.policy_for(update.kind) is GatePolicy.MONOTONIC_SLOT:
            last = self._last_slot.get(update.kind)
            if last is not None and update.slot < last:
                self.metrics.dropped += 1
                key = update.kind.value
                self.metrics.dropped_by_kind[key] = self.metrics.dropped_by_kind.get(key, 0) + 1
                logger.warning(
                    f"Dropped out-of-order {key} update: slot {update.slot} "
                    f"< last seen {last}"
                )
                return None
            self._last_slot[update.kind] = update.slot

        self.metrics.admitted += 1
        return update

    def reset(self) -> None:
        """Forget the slots seen so far (new session)."""
        self._last_slot.clear()

    def on_new_session(self) -> None:
        """Called by the owner when a session is (re)established."""
        if self.reset_on_reconnect:
            self.reset()
