"""Per-process record of which atomic procedures the database provides.

The probe result is cached so a missing procedure is not re-attempted on
every request, but only for a limited time: after the TTL the next call
probes again, so a procedure deployed later is picked up without a restart.
"""

import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple


class CapabilityState(str, Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class AtomicCapability:
    """Tri-state availability of server-side procedures, with expiry.

    Injected into the usage service; tests construct one with a fixed
    initial state (or a fake clock) instead of touching module globals.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        initial: Optional[Dict[str, CapabilityState]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: Dict[str, Tuple[CapabilityState, float]] = {}
        for name, state in (initial or {}).items():
            self._states[name] = (state, clock())

    def state(self, procedure: str) -> CapabilityState:
        entry = self._states.get(procedure)
        if entry is None:
            return CapabilityState.UNKNOWN
        state, recorded_at = entry
        if state is CapabilityState.UNAVAILABLE and self._clock() - recorded_at >= self.ttl_seconds:
            del self._states[procedure]
            return CapabilityState.UNKNOWN
        return state

    def should_attempt(self, procedure: str) -> bool:
        """Whether the atomic procedure should be called at all."""
        return self.state(procedure) is not CapabilityState.UNAVAILABLE

    def mark_available(self, procedure: str) -> None:
        self._states[procedure] = (CapabilityState.AVAILABLE, self._clock())

    def mark_unavailable(self, procedure: str) -> bool:
        """Record a missing procedure.

        Returns:
            True if this is a transition (previously not unavailable), which
            is when callers log the detection.
        """
        transition = self.state(procedure) is not CapabilityState.UNAVAILABLE
        self._states[procedure] = (CapabilityState.UNAVAILABLE, self._clock())
        return transition

    def snapshot(self) -> Dict[str, str]:
        """Current state of every procedure that has been probed."""
        return {name: self.state(name).value for name in list(self._states)}
