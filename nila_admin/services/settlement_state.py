"""Per-attempt phases of a settlement and the transitions allowed between them."""

from enum import Enum


class InvalidTransition(Exception):
    pass


class SettlementPhase(str, Enum):
    VALIDATING = "validating"
    RESERVING = "reserving"
    RECORDING = "recording"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL = {SettlementPhase.COMPLETED, SettlementPhase.FAILED}

ALLOWED = {
    # RECORDING -> VALIDATING: a lost compare-and-swap sends the attempt back for a fresh read
    # VALIDATING -> RECORDING: the re-read still covers the debit (or a resume skips reserving)
    SettlementPhase.VALIDATING: {SettlementPhase.RESERVING, SettlementPhase.RECORDING, SettlementPhase.FAILED},
    SettlementPhase.RESERVING: {SettlementPhase.RECORDING, SettlementPhase.FAILED},
    SettlementPhase.RECORDING: {SettlementPhase.VALIDATING, SettlementPhase.TRANSFERRING, SettlementPhase.FAILED},
    SettlementPhase.TRANSFERRING: {SettlementPhase.COMPLETED, SettlementPhase.FAILED},
    SettlementPhase.COMPLETED: set(),
    SettlementPhase.FAILED: set(),
}


def assert_transition(old: SettlementPhase, new: SettlementPhase) -> None:
    if new not in ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal settlement transition: {old.value} -> {new.value}")


class PhaseTracker:
    """Current phase of one in-flight attempt; every move is checked against ALLOWED."""

    def __init__(self, start: SettlementPhase = SettlementPhase.VALIDATING) -> None:
        self.phase = start
        self.history = [start]

    def advance(self, new: SettlementPhase) -> None:
        assert_transition(self.phase, new)
        self.phase = new
        self.history.append(new)

    @property
    def done(self) -> bool:
        return self.phase in TERMINAL
