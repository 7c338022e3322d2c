"""
Per-exchange circuit breaker.

State flow:
- CLOSED: calls allowed; consecutive batch failures are counted
- OPEN: exchange skipped until the cooldown elapses
- HALF_OPEN: exactly one trial batch allowed; success closes, failure reopens
  with the cooldown doubled (capped)

The board is persisted between invocations through CheckpointManager.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_VALID_TRANSITIONS: dict[CircuitState, set[CircuitState]] = {
    CircuitState.CLOSED: {CircuitState.OPEN},
    CircuitState.OPEN: {CircuitState.HALF_OPEN},
    CircuitState.HALF_OPEN: {CircuitState.CLOSED, CircuitState.OPEN},
}


class CircuitOpen(Exception):
    """Raised when a call is attempted on an exchange whose circuit does not allow it."""
    pass


@dataclass(frozen=True)
class CircuitTransition:
    exchange: str
    from_state: CircuitState
    to_state: CircuitState
    consecutive_failures: int
    cooldown_sec: float


@dataclass
class ExchangeCircuit:
    exchange: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    cooldown_sec: float = 0.0
    trial_started_at: float | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ExchangeCircuit:
        return cls(
            exchange=data["exchange"],
            state=CircuitState(data.get("state", "closed")),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            opened_at=data.get("opened_at"),
            cooldown_sec=float(data.get("cooldown_sec", 0.0)),
            trial_started_at=data.get("trial_started_at"),
        )


@dataclass
class CircuitBoard:
    """All exchange circuits plus the breaker policy."""
    failure_threshold: int = 3
    base_cooldown_sec: float = 60.0
    max_cooldown_sec: float = 1800.0
    # A half-open trial older than this is considered lost (crashed invocation)
    trial_timeout_sec: float = 60.0
    circuits: dict[str, ExchangeCircuit] = field(default_factory=dict)

    def get(self, exchange: str) -> ExchangeCircuit:
        circuit = self.circuits.get(exchange)
        if circuit is None:
            circuit = ExchangeCircuit(exchange=exchange)
            self.circuits[exchange] = circuit
        return circuit

    def state(self, exchange: str) -> CircuitState:
        return self.get(exchange).state

    def _move(self, circuit: ExchangeCircuit, to_state: CircuitState) -> CircuitTransition:
        if to_state not in _VALID_TRANSITIONS[circuit.state]:
            raise ValueError(
                f"Invalid circuit transition for {circuit.exchange}: "
                f"{circuit.state.value} -> {to_state.value}"
            )
        transition = CircuitTransition(
            exchange=circuit.exchange,
            from_state=circuit.state,
            to_state=to_state,
            consecutive_failures=circuit.consecutive_failures,
            cooldown_sec=circuit.cooldown_sec,
        )
        circuit.state = to_state
        logger.info(
            "Circuit %s: %s -> %s (failures=%d)",
            circuit.exchange, transition.from_state.value, to_state.value,
            circuit.consecutive_failures,
        )
        return transition

    def refresh(self, now: float) -> list[CircuitTransition]:
        """Move OPEN circuits whose cooldown has elapsed to HALF_OPEN."""
        transitions = []
        for circuit in self.circuits.values():
            if circuit.state == CircuitState.OPEN and circuit.opened_at is not None:
                if now - circuit.opened_at >= circuit.cooldown_sec:
                    circuit.trial_started_at = None
                    transitions.append(self._move(circuit, CircuitState.HALF_OPEN))
        return transitions

    def allows(self, exchange: str, now: float) -> bool:
        """True if a batch call may be scheduled for the exchange right now."""
        circuit = self.get(exchange)
        if circuit.state == CircuitState.CLOSED:
            return True
        if circuit.state == CircuitState.HALF_OPEN:
            return not self._trial_in_flight(circuit, now)
        return False

    def _trial_in_flight(self, circuit: ExchangeCircuit, now: float) -> bool:
        return (
            circuit.trial_started_at is not None
            and now - circuit.trial_started_at < self.trial_timeout_sec
        )

    def begin_call(self, exchange: str, now: float) -> None:
        """Claim the call slot. In HALF_OPEN only one trial is handed out."""
        circuit = self.get(exchange)
        if not self.allows(exchange, now):
            raise CircuitOpen(f"Circuit {circuit.state.value} for {exchange}")
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.trial_started_at = now

    def record_success(self, exchange: str, now: float) -> CircuitTransition | None:
        circuit = self.get(exchange)
        circuit.consecutive_failures = 0
        circuit.trial_started_at = None
        if circuit.state == CircuitState.HALF_OPEN:
            transition = self._move(circuit, CircuitState.CLOSED)
            circuit.cooldown_sec = 0.0
            circuit.opened_at = None
            return transition
        return None

    def record_failure(self, exchange: str, now: float) -> CircuitTransition | None:
        circuit = self.get(exchange)
        circuit.consecutive_failures += 1
        circuit.trial_started_at = None
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.cooldown_sec = min(circuit.cooldown_sec * 2, self.max_cooldown_sec)
            circuit.opened_at = now
            return self._move(circuit, CircuitState.OPEN)
        if circuit.state == CircuitState.CLOSED and circuit.consecutive_failures >= self.failure_threshold:
            circuit.cooldown_sec = self.base_cooldown_sec
            circuit.opened_at = now
            return self._move(circuit, CircuitState.OPEN)
        return None

    def open_exchanges(self, now: float) -> set[str]:
        """Exchanges that may not be called right now."""
        return {name for name in self.circuits if not self.allows(name, now)}

    def to_dict(self) -> dict:
        return {"circuits": {name: c.to_dict() for name, c in self.circuits.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> CircuitBoard:
        board = cls()
        for name, raw in data.get("circuits", {}).items():
            board.circuits[name] = ExchangeCircuit.from_dict(raw)
        return board

    def configure(
        self,
        failure_threshold: int,
        base_cooldown_sec: float,
        max_cooldown_sec: float,
        trial_timeout_sec: float,
    ) -> CircuitBoard:
        """Apply policy from config to a restored board. Returns self."""
        self.failure_threshold = failure_threshold
        self.base_cooldown_sec = base_cooldown_sec
        self.max_cooldown_sec = max_cooldown_sec
        self.trial_timeout_sec = trial_timeout_sec
        return self
