"""Idle detection and recovery for agent sessions."""

from .config import RespawnConfig
from .controller import ControllerState, RespawnController
from .scheduler import AsyncioScheduler, ManualScheduler, Scheduler, TimerSlot
from .signals import IdleSignal, Signal, SignalReading, TeamPresence
from .timing import TimingHistory
from .verifier import CliVerifier, StaticVerifier, Verdict, VerifierResult

__all__ = [
    "AsyncioScheduler",
    "CliVerifier",
    "ControllerState",
    "IdleSignal",
    "ManualScheduler",
    "RespawnConfig",
    "RespawnController",
    "Scheduler",
    "Signal",
    "SignalReading",
    "StaticVerifier",
    "TeamPresence",
    "TimerSlot",
    "TimingHistory",
    "Verdict",
    "VerifierResult",
]
