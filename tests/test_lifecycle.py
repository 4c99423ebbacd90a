"""Process-exit decisions and job transitions."""

import pytest

from bulk_streamer.lifecycle import (
    ExitAction,
    can_transition,
    decide_exit,
    next_playlist_index,
    playlist_index,
    should_loop_process,
)
from bulk_streamer.models import JobStatus, LoopMode


def exit_with(code, status=JobStatus.LIVE, loop=LoopMode.OFF, length=0, index=0, attempts=0):
    return decide_exit(status, code, loop, length, index, attempts, 3)


class TestCleanExit:
    def test_playlist_advances(self):
        decision = exit_with(0, loop=LoopMode.OFF, length=3, index=0)
        assert decision.action is ExitAction.RESTART
        assert decision.next_index == 1

    def test_playlist_wraps_with_loop_all(self):
        decision = exit_with(0, loop=LoopMode.LOOP_ALL, length=3, index=2)
        assert decision.next_index == 0

    def test_playlist_ends_without_loop(self):
        decision = exit_with(0, loop=LoopMode.OFF, length=3, index=2)
        assert decision.action is ExitAction.FINALIZE_STOPPED
        assert decision.job_status is JobStatus.STOPPED

    @pytest.mark.parametrize("length", [0, 1, 3])
    def test_loop_one_repeats_same_item(self, length):
        index = 2 if length == 3 else 0
        assert exit_with(0, loop=LoopMode.LOOP_ONE, length=length, index=index).next_index == index

    def test_single_item_loop_restarts_every_time(self):
        decisions = [exit_with(0, loop=LoopMode.LOOP_ALL, length=1) for _ in range(5)]
        assert all(d.action is ExitAction.RESTART and d.next_index == 0 for d in decisions)

    def test_single_item_without_loop_stops(self):
        assert exit_with(0).action is ExitAction.FINALIZE_STOPPED


class TestFailureExit:
    def test_retry_until_limit(self):
        first = exit_with(1, attempts=0)
        second = exit_with(1, attempts=1)
        third = exit_with(1, attempts=2)

        assert (first.action, first.attempts, first.job_status) == (ExitAction.RETRY, 1, JobStatus.FAILED_RECOVERY)
        assert (second.action, second.attempts) == (ExitAction.RETRY, 2)
        assert (third.action, third.attempts, third.job_status) == (ExitAction.FAIL, 3, JobStatus.FAILED)

    def test_killed_process_counts_as_failure(self):
        assert exit_with(None).action is ExitAction.RETRY


class TestOverrides:
    def test_stopping_wins_over_exit_code(self):
        assert exit_with(1, status=JobStatus.STOPPING).action is ExitAction.FINALIZE_STOPPED
        assert exit_with(0, status=JobStatus.STOPPING, loop=LoopMode.LOOP_ALL).action is ExitAction.FINALIZE_STOPPED

    def test_circuit_breaker_is_preserved(self):
        decision = exit_with(255, status=JobStatus.CIRCUIT_BREAKER)
        assert decision.action is ExitAction.HALT
        assert decision.job_status is JobStatus.CIRCUIT_BREAKER


class TestHelpers:
    def test_encoder_loops_only_single_loop_all(self):
        assert should_loop_process(0, LoopMode.LOOP_ALL)
        assert should_loop_process(1, LoopMode.LOOP_ALL)
        assert not should_loop_process(1, LoopMode.LOOP_ONE)
        assert not should_loop_process(3, LoopMode.LOOP_ALL)

    def test_playlist_index_is_modular(self):
        assert playlist_index(4, 3) == 1
        assert playlist_index(5, 0) == 0

    def test_next_index_off_single(self):
        assert next_playlist_index(0, 1, LoopMode.OFF) is None

    def test_transitions(self):
        assert can_transition(JobStatus.QUEUED, JobStatus.STARTING)
        assert can_transition(JobStatus.FAILED, JobStatus.QUEUED)
        assert not can_transition(JobStatus.LIVE, JobStatus.QUEUED)
        assert not can_transition(JobStatus.STOPPING, JobStatus.LIVE)
