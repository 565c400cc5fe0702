"""Redundant execution race core.

A race runs the same workload on N unreliable workers, accepts the first
output that parses as ``salt,address`` and cancels the rest.
"""

from create3_race.race.attempt import WorkerAttempt
from create3_race.race.cancellation import ShutdownToken
from create3_race.race.coordinator import RaceCoordinator, ResolveOnce
from create3_race.race.models import AttemptOutcome, AttemptState, RaceResult, Workload
from create3_race.race.parser import parse_race_output

__all__ = [
    "AttemptOutcome",
    "AttemptState",
    "RaceCoordinator",
    "RaceResult",
    "ResolveOnce",
    "ShutdownToken",
    "WorkerAttempt",
    "Workload",
    "parse_race_output",
]
