"""Job state transitions and process-exit decisions.

Pure functions; the orchestrator applies whatever they decide.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .models import JobStatus, LoopMode

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.STARTING, JobStatus.STOPPING, JobStatus.STOPPED}),
    JobStatus.STARTING: frozenset(
        {JobStatus.STARTING, JobStatus.LIVE, JobStatus.FAILED, JobStatus.STOPPING, JobStatus.STOPPED}
    ),
    JobStatus.LIVE: frozenset(
        {
            JobStatus.STARTING,
            JobStatus.STOPPING,
            JobStatus.STOPPED,
            JobStatus.FAILED,
            JobStatus.FAILED_RECOVERY,
            JobStatus.CIRCUIT_BREAKER,
        }
    ),
    JobStatus.STOPPING: frozenset({JobStatus.STOPPED}),
    JobStatus.FAILED_RECOVERY: frozenset({JobStatus.STARTING, JobStatus.STOPPING, JobStatus.STOPPED, JobStatus.QUEUED}),
    JobStatus.STOPPED: frozenset({JobStatus.QUEUED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.CIRCUIT_BREAKER: frozenset({JobStatus.QUEUED, JobStatus.STOPPED}),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class ExitAction(str, Enum):
    RESTART = "restart"
    FINALIZE_STOPPED = "finalize_stopped"
    RETRY = "retry"
    FAIL = "fail"
    HALT = "halt"


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    next_index: Optional[int] = None
    attempts: Optional[int] = None

    @property
    def job_status(self) -> Optional[JobStatus]:
        return {
            ExitAction.FINALIZE_STOPPED: JobStatus.STOPPED,
            ExitAction.RETRY: JobStatus.FAILED_RECOVERY,
            ExitAction.FAIL: JobStatus.FAILED,
            ExitAction.HALT: JobStatus.CIRCUIT_BREAKER,
        }.get(self.action)


def should_loop_process(playlist_length: int, loop_mode: LoopMode) -> bool:
    """Only a single-item LoopAll job lets the encoder loop its own input."""
    return playlist_length <= 1 and loop_mode == LoopMode.LOOP_ALL


def playlist_index(index: int, playlist_length: int) -> int:
    if playlist_length <= 0:
        return 0
    return index % playlist_length


def next_playlist_index(index: int, playlist_length: int, loop_mode: LoopMode) -> Optional[int]:
    """Index to play after a clean finish, or None when the job is done."""
    if playlist_length > 1:
        if loop_mode == LoopMode.LOOP_ONE:
            return index
        if index + 1 < playlist_length:
            return index + 1
        if loop_mode == LoopMode.LOOP_ALL:
            return 0
        return None
    if loop_mode in (LoopMode.LOOP_ALL, LoopMode.LOOP_ONE):
        return 0
    return None


def decide_exit(
    status: Optional[JobStatus],
    exit_code: Optional[int],
    loop_mode: LoopMode,
    playlist_length: int,
    index: int,
    attempts: int,
    max_attempts: int,
) -> ExitDecision:
    """Map an encoder exit to the next step for its job.

    ``status`` is the job's persisted status at exit time: an operator stop or
    a tripped circuit breaker wins over whatever the exit code says.
    """
    if status == JobStatus.STOPPING:
        return ExitDecision(ExitAction.FINALIZE_STOPPED)
    if status == JobStatus.CIRCUIT_BREAKER:
        return ExitDecision(ExitAction.HALT)
    if status == JobStatus.STOPPED:
        return ExitDecision(ExitAction.FINALIZE_STOPPED)

    if exit_code == 0:
        next_index = next_playlist_index(index, playlist_length, loop_mode)
        if next_index is None:
            return ExitDecision(ExitAction.FINALIZE_STOPPED)
        return ExitDecision(ExitAction.RESTART, next_index=next_index)

    attempts = (attempts or 0) + 1
    if attempts >= max_attempts:
        return ExitDecision(ExitAction.FAIL, attempts=attempts)
    return ExitDecision(ExitAction.RETRY, attempts=attempts)
