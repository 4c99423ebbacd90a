"""
Stream Orchestrator Tests

Admission, process supervision, playlist advancement, recovery, stop handling
and the viewer poll (circuit breaker and first comment). Encoder processes are
fakes that exit when the test says so.
"""

import asyncio
import time

import pytest

from bulk_streamer.errors import ConfigurationError, JobConflictError
from bulk_streamer.facebook_client import FacebookAPIError
from bulk_streamer.models import BroadcastTarget, JobStatus, LiveVideoStatus, LoopMode, SessionStatus
from tests.conftest import backdate_session, wait_for


def job_status(store, job_id):
    return store.get_job_status(job_id)


async def start_job(orchestrator, spawner, job_id, expected_spawns=1):
    await orchestrator.process_queue()
    await wait_for(lambda: len(spawner.calls) >= expected_spawns and job_id in orchestrator.active_streams)


async def finish(orchestrator, store, job_id):
    await orchestrator.stop_stream(job_id)
    await wait_for(lambda: job_id not in orchestrator._supervisors)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_job_goes_live(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])

        await start_job(orchestrator, spawner, job_id)

        assert job_status(store, job_id) is JobStatus.LIVE
        command = spawner.calls[0]
        assert command[0] == "ffmpeg"
        assert command[1:3] == ["-stream_loop", "-1"]
        assert command[-1] == "rtmps://live-api-s.facebook.com:443/rtmp/key1"
        graph_client.create_live_video.assert_called_once_with("page1", "page-token", "Live: a.mp4", "Bulk Streamer Live")

        session = store.live_session(job_id)
        assert (session.live_video_id, session.vod_video_id, session.current_video_index) == ("lv1", "vod1", 0)
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_templates_are_used_for_the_broadcast(self, orchestrator, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(
            ["page1"], [seeded[0]], title_template="Morning show", description_template="Daily"
        )

        await start_job(orchestrator, spawner, job_id)

        graph_client.create_live_video.assert_called_once_with("page1", "page-token", "Morning show", "Daily")
        await finish(orchestrator, orchestrator.store, job_id)

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, orchestrator, store, seeded, spawner):
        job_ids = [orchestrator.create_jobs(["page1"], [seeded[0]])[0] for _ in range(3)]

        admitted = await orchestrator.process_queue()
        await wait_for(lambda: len(orchestrator.active_streams) == 2)

        assert len(admitted) == 2
        assert await orchestrator.process_queue() == []
        [waiting] = [job_id for job_id in job_ids if job_id not in admitted]
        assert job_status(store, waiting) is JobStatus.QUEUED

        await orchestrator.stop_all_streams()
        await wait_for(lambda: not orchestrator._supervisors)

    @pytest.mark.asyncio
    async def test_missing_components_fail_the_job(self, orchestrator, store, vault, notifier, spawner):
        store.upsert_page("page1", "Page One", vault.encrypt("page-token"))
        video = store.add_video("/media/a.mp4")
        [job_id] = orchestrator.create_jobs(["page1"], [video.id])

        await orchestrator.process_queue()
        await wait_for(lambda: not orchestrator._supervisors)

        assert job_status(store, job_id) is JobStatus.FAILED
        assert store.latest_session(job_id).error_log == "Missing stream components"
        assert spawner.calls == []
        notifier.notify_job.assert_called_once()

    @pytest.mark.asyncio
    async def test_remote_error_fails_the_job(self, orchestrator, store, seeded, spawner, graph_client):
        graph_client.create_live_video.side_effect = FacebookAPIError("Permissions error", code=200)
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])

        await orchestrator.process_queue()
        await wait_for(lambda: not orchestrator._supervisors)

        assert job_status(store, job_id) is JobStatus.FAILED
        assert "publish_video" in store.latest_session(job_id).error_log
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_profile_applied_to_command(self, orchestrator, store, seeded, spawner):
        profile = store.save_profile("Square", {"aspectRatio": "1:1"})
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]], editing_profile_id=profile.id)

        await start_job(orchestrator, spawner, job_id)

        command = spawner.calls[0]
        assert command[command.index("-vf") + 1].startswith("scale=1080:1080")
        await finish(orchestrator, store, job_id)

    def test_unknown_profile_rejected(self, orchestrator, seeded):
        with pytest.raises(ConfigurationError):
            orchestrator.create_jobs(["page1"], [seeded[0]], editing_profile_id="missing")


class TestPlaylist:
    @pytest.mark.asyncio
    async def test_advances_and_reuses_broadcast(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], seeded, loop=LoopMode.OFF)
        await start_job(orchestrator, spawner, job_id)
        assert "-stream_loop" not in spawner.calls[0]

        spawner.last.exit(0)
        await wait_for(lambda: len(spawner.calls) == 2)
        spawner.last.exit(0)
        await wait_for(lambda: len(spawner.calls) == 3)

        inputs = [call[call.index("-i") + 1] for call in spawner.calls]
        assert inputs == ["/media/a.mp4", "/media/b.mp4", "/media/c.mp4"]
        graph_client.create_live_video.assert_called_once()
        assert store.live_session(job_id).current_video_index == 2

        spawner.last.exit(0)
        await wait_for(lambda: job_id not in orchestrator._supervisors)

        assert job_status(store, job_id) is JobStatus.STOPPED
        assert store.latest_session(job_id).status == SessionStatus.STOPPED.value

    @pytest.mark.asyncio
    async def test_loop_all_wraps_to_first_item(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], seeded[:2], loop=LoopMode.LOOP_ALL)
        await start_job(orchestrator, spawner, job_id)

        spawner.last.exit(0)
        await wait_for(lambda: len(spawner.calls) == 2)
        spawner.last.exit(0)
        await wait_for(lambda: len(spawner.calls) == 3)

        assert spawner.calls[2][spawner.calls[2].index("-i") + 1] == "/media/a.mp4"
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_loop_one_repeats_item(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], seeded, loop=LoopMode.LOOP_ONE)
        await start_job(orchestrator, spawner, job_id)

        spawner.last.exit(0)
        await wait_for(lambda: len(spawner.calls) == 2)

        assert spawner.calls[1][spawner.calls[1].index("-i") + 1] == "/media/a.mp4"
        assert "-stream_loop" not in spawner.calls[1]
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_progress_is_recorded(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)

        spawner.last.emit("frame=  60 fps= 30 q=28.0 size= 1024kB time=00:00:02.00 bitrate=4400.1kbits/s speed=1x\r")
        await wait_for(lambda: store.live_session(job_id).fps == 30.0)

        assert store.live_session(job_id).bitrate == "4400.1kbits/s"
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_progress_split_across_reads(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)

        spawner.last.emit("frame=  60 fps= 2")
        await asyncio.sleep(0.05)
        assert store.live_session(job_id).fps is None

        spawner.last.emit("9.97 q=28.0 size= 1024kB time=00:00:02.00 bitrate=4400.1kbits/s speed=1x\r")
        await wait_for(lambda: store.live_session(job_id).fps is not None)

        session = store.live_session(job_id)
        assert (session.fps, session.bitrate) == (29.97, "4400.1kbits/s")
        await finish(orchestrator, store, job_id)


class TestRecovery:
    @pytest.mark.asyncio
    async def test_failures_retry_then_fail(self, orchestrator, store, seeded, spawner, graph_client, notifier):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]], loop=LoopMode.OFF)

        for attempt in (1, 2):
            await start_job(orchestrator, spawner, job_id, expected_spawns=attempt)
            spawner.last.exit(1)
            await wait_for(lambda: job_id not in orchestrator._supervisors)

            job = store.get_job(job_id)
            assert (job.status, job.recovery_attempts) == (JobStatus.FAILED_RECOVERY.value, attempt)
            assert store.latest_session(job_id).error_log == "Process exited with code 1"

        await start_job(orchestrator, spawner, job_id, expected_spawns=3)
        spawner.last.exit(1)
        await wait_for(lambda: job_id not in orchestrator._supervisors)

        job = store.get_job(job_id)
        assert (job.status, job.recovery_attempts) == (JobStatus.FAILED.value, 3)
        graph_client.create_live_video.assert_called_once()
        notifier.notify_job.assert_called_once()
        assert notifier.notify_job.call_args[0][1] is JobStatus.FAILED
        assert await orchestrator.process_queue() == []

    @pytest.mark.asyncio
    async def test_recovering_playlist_resumes_failed_item(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], seeded, loop=LoopMode.OFF)
        await start_job(orchestrator, spawner, job_id)
        spawner.last.exit(0)
        await wait_for(lambda: len(spawner.calls) == 2)

        spawner.last.exit(1)
        await wait_for(lambda: job_id not in orchestrator._supervisors)
        await start_job(orchestrator, spawner, job_id, expected_spawns=3)

        assert spawner.calls[2][spawner.calls[2].index("-i") + 1] == "/media/b.mp4"
        graph_client.create_live_video.assert_called_once()
        await finish(orchestrator, store, job_id)


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_terminates_process(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)
        process = spawner.last

        await finish(orchestrator, store, job_id)

        assert process.terminated
        assert len(spawner.calls) == 1
        assert job_status(store, job_id) is JobStatus.STOPPED
        assert store.latest_session(job_id).status == SessionStatus.STOPPED.value

    @pytest.mark.asyncio
    async def test_stop_without_process_forces_stopped(self, orchestrator, store, seeded):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        store.insert_session(job_id, BroadcastTarget("lv9", "rtmps://ingest/9"))
        store.set_job_status(job_id, JobStatus.LIVE)

        await orchestrator.stop_stream(job_id)

        assert job_status(store, job_id) is JobStatus.STOPPED
        assert store.live_session(job_id) is None

    @pytest.mark.asyncio
    async def test_stop_before_start_never_spawns(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])

        await orchestrator.process_queue()
        await orchestrator.stop_stream(job_id)
        await wait_for(lambda: job_id not in orchestrator._supervisors)

        assert spawner.calls == []
        assert job_status(store, job_id) is JobStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_all_sweeps_orphans(self, orchestrator, store, seeded, spawner):
        [running] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, running)
        [orphan] = orchestrator.create_jobs(["page1"], [seeded[1]])
        store.insert_session(orphan, BroadcastTarget("lv9", "rtmps://ingest/9"))
        store.set_job_status(orphan, JobStatus.STOPPING)

        await orchestrator.stop_all_streams()
        await wait_for(lambda: not orchestrator._supervisors)

        assert job_status(store, running) is JobStatus.STOPPED
        assert job_status(store, orphan) is JobStatus.STOPPED
        assert store.live_session(orphan) is None

    @pytest.mark.asyncio
    async def test_restart_requires_idle_job(self, orchestrator, store, seeded, spawner):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)

        with pytest.raises(JobConflictError):
            orchestrator.restart_job(job_id)

        await finish(orchestrator, store, job_id)
        orchestrator.restart_job(job_id)
        assert job_status(store, job_id) is JobStatus.QUEUED


class TestViewerPoll:
    @pytest.mark.asyncio
    async def test_peak_viewers_tracked(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)

        for viewers in (10, 4):
            graph_client.get_live_video_state.return_value = LiveVideoStatus("LIVE", viewers)
            await orchestrator.poll_viewer_stats()

        assert store.live_session(job_id).peak_viewers == 10
        graph_client.get_live_video_state.assert_called_with("lv1", "page-token")
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_remote_end_stops_job(self, orchestrator, store, seeded, spawner, graph_client, notifier):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)
        graph_client.get_live_video_state.return_value = LiveVideoStatus("VOD", 0)

        await orchestrator.poll_viewer_stats()
        await wait_for(lambda: job_id not in orchestrator._supervisors)

        assert spawner.last.terminated
        assert job_status(store, job_id) is JobStatus.STOPPED
        notifier.notify_job.assert_called_once()

    @pytest.mark.asyncio
    async def test_circuit_breaker_trips_on_fifth_failure(self, orchestrator, store, seeded, spawner, graph_client, notifier):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)
        graph_client.get_live_video_state.side_effect = FacebookAPIError("Service temporarily unavailable", code=2)

        for _ in range(4):
            await orchestrator.poll_viewer_stats()
        assert job_status(store, job_id) is JobStatus.LIVE
        assert store.live_session(job_id).api_fail_count == 4

        await orchestrator.poll_viewer_stats()
        await wait_for(lambda: job_id not in orchestrator._supervisors)

        assert spawner.last.terminated
        assert job_status(store, job_id) is JobStatus.CIRCUIT_BREAKER
        session = store.latest_session(job_id)
        assert session.status == SessionStatus.FAILED.value
        assert "Circuit breaker" in session.error_log
        assert notifier.notify_job.call_args[0][1] is JobStatus.CIRCUIT_BREAKER
        assert await orchestrator.process_queue() == []

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)
        outage = FacebookAPIError("Service temporarily unavailable", code=2)

        for _ in range(2):
            graph_client.get_live_video_state.side_effect = outage
            for _ in range(4):
                await orchestrator.poll_viewer_stats()
            assert store.live_session(job_id).api_fail_count == 4

            graph_client.get_live_video_state.side_effect = None
            await orchestrator.poll_viewer_stats()
            assert store.live_session(job_id).api_fail_count == 0

        assert job_status(store, job_id) is JobStatus.LIVE
        assert not spawner.last.terminated
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_slow_notification_does_not_block_the_loop(self, orchestrator, store, seeded, spawner, graph_client, notifier):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)
        graph_client.get_live_video_state.return_value = LiveVideoStatus("VOD", 0)
        notifier.notify_job.side_effect = lambda *args: time.sleep(0.5)

        loop = asyncio.get_running_loop()
        ticks = []

        async def ticker():
            while True:
                ticks.append(loop.time())
                await asyncio.sleep(0.02)

        ticking = asyncio.create_task(ticker())
        try:
            await orchestrator.poll_viewer_stats()
        finally:
            ticking.cancel()

        notifier.notify_job.assert_called_once()
        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        assert len(ticks) > 5
        assert max(gaps) < 0.3
        await wait_for(lambda: job_id not in orchestrator._supervisors)

    @pytest.mark.asyncio
    async def test_poll_skipped_without_credentials(self, orchestrator, store, graph_client):
        await orchestrator.poll_viewer_stats()
        graph_client.get_live_video_state.assert_not_called()


class TestFirstComment:
    @pytest.mark.asyncio
    async def test_posted_once_after_delay(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]], first_comment="Welcome!")
        await start_job(orchestrator, spawner, job_id)

        await orchestrator.poll_viewer_stats()
        graph_client.post_comment.assert_not_called()

        backdate_session(store, job_id, 20)
        await orchestrator.poll_viewer_stats()
        await orchestrator.poll_viewer_stats()

        graph_client.post_comment.assert_called_once_with("vod1", "page-token", "Welcome!")
        assert store.live_session(job_id).comment_posted is True
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_failed_comment_is_retried(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]], first_comment="Welcome!")
        await start_job(orchestrator, spawner, job_id)
        backdate_session(store, job_id, 20)
        graph_client.post_comment.side_effect = [FacebookAPIError("Invalid parameter", status_code=400, code=100), "c1"]

        await orchestrator.poll_viewer_stats()
        assert store.live_session(job_id).comment_posted is False

        await orchestrator.poll_viewer_stats()
        assert store.live_session(job_id).comment_posted is True
        assert graph_client.post_comment.call_count == 2
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_live_id_used_without_vod(self, orchestrator, store, seeded, spawner, graph_client):
        graph_client.create_live_video.return_value = BroadcastTarget("lv2", "rtmps://ingest/2")
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]], first_comment="Hi")
        await start_job(orchestrator, spawner, job_id)
        backdate_session(store, job_id, 20)

        await orchestrator.poll_viewer_stats()

        graph_client.post_comment.assert_called_once_with("lv2", "page-token", "Hi")
        await finish(orchestrator, store, job_id)


class TestMetadata:
    @pytest.mark.asyncio
    async def test_updates_live_broadcast_and_templates(self, orchestrator, store, seeded, spawner, graph_client):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        await start_job(orchestrator, spawner, job_id)

        await orchestrator.update_metadata(job_id, "New title", None)

        graph_client.update_live_video.assert_called_once_with("lv1", "page-token", "New title", None)
        assert store.get_job(job_id).title_template == "New title"
        await finish(orchestrator, store, job_id)

    @pytest.mark.asyncio
    async def test_requires_live_session(self, orchestrator, seeded):
        [job_id] = orchestrator.create_jobs(["page1"], [seeded[0]])
        with pytest.raises(ConfigurationError):
            await orchestrator.update_metadata(job_id, "New title", None)
