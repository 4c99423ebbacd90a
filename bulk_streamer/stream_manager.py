"""Run queued stream jobs as supervised ffmpeg processes against Facebook Live."""

from __future__ import annotations

import asyncio
import codecs
import datetime as dt
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import requests
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc
from sqlalchemy.exc import SQLAlchemyError

from .config import GraphConfig, NotifierConfig, OrchestratorConfig
from .credentials import ClientFactory, CredentialManager
from .errors import ConfigurationError, JobConflictError, NotFoundError
from .facebook_client import FacebookAPIError, FacebookClient
from .ffmpeg import FfmpegCommandBuilder, parse_progress
from .hardware import HardwareDetector
from .lifecycle import ExitAction, ExitDecision, can_transition, decide_exit, playlist_index, should_loop_process
from .models import (
    REUSABLE_SESSION_STATUSES,
    BroadcastTarget,
    JobStatus,
    JobSummary,
    LoopMode,
    PolledSession,
    SessionStatus,
    utcnow,
)
from .notifier import Notifier
from .profile import EditingProfile, parse_profile
from .store import JobStore
from .tables import StreamJob
from .vault import CredentialVault

logger = logging.getLogger(__name__)

Process = asyncio.subprocess.Process
SpawnFn = Callable[[Sequence[str]], Awaitable[Process]]

STDERR_CHUNK = 4096
_LINE_BREAK = re.compile(r"[\r\n]")
SHUTDOWN_TIMEOUT = 10.0
DEFAULT_DESCRIPTION = "Bulk Streamer Live"

STOP_STATUSES = (JobStatus.STOPPING, JobStatus.STOPPED, JobStatus.CIRCUIT_BREAKER)


async def spawn_ffmpeg(command: Sequence[str]) -> Process:
    return await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


class StreamOrchestrator:
    """Admits queued jobs, supervises their encoders and watches the remote broadcasts.

    Each admitted job gets one supervisor task that owns its process for the
    whole playlist: start, wait for exit, decide, maybe start again.
    """

    def __init__(
        self,
        store: JobStore,
        vault: CredentialVault,
        config: Optional[OrchestratorConfig] = None,
        *,
        graph: Optional[GraphConfig] = None,
        client_factory: ClientFactory = FacebookClient,
        hardware: Optional[HardwareDetector] = None,
        spawn: Optional[SpawnFn] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.store = store
        self.credentials = CredentialManager(store, vault, client_factory, graph)
        self.hardware = hardware or HardwareDetector(self.config.ffmpeg_path)
        self.spawn = spawn or spawn_ffmpeg
        self.notifier = notifier or Notifier(NotifierConfig())
        self.active_streams: Dict[str, Process] = {}
        self._supervisors: Dict[str, asyncio.Task] = {}
        self.scheduler = AsyncIOScheduler(timezone=tzutc())

    # ---------------------------------------------------------------- lifecycle

    def start(self) -> None:
        self.scheduler.add_job(
            self.process_queue,
            trigger="interval",
            seconds=self.config.queue_interval,
            id="process-queue",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.poll_viewer_stats,
            trigger="interval",
            seconds=self.config.viewer_poll_interval,
            id="poll-viewer-stats",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Orchestrator started (max %d concurrent, queue every %ss, polling every %ss)",
            self.config.max_concurrent,
            self.config.queue_interval,
            self.config.viewer_poll_interval,
        )

    async def shutdown(self) -> None:
        await self.stop_all_streams()
        supervisors = list(self._supervisors.values())
        if supervisors:
            _, pending = await asyncio.wait(supervisors, timeout=SHUTDOWN_TIMEOUT)
            for task in pending:
                task.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Orchestrator stopped")

    @property
    def active_count(self) -> int:
        return len(self._supervisors)

    # ---------------------------------------------------------------- admission

    async def process_queue(self) -> List[str]:
        """Admit as many due jobs as there are free slots."""
        available = self.config.max_concurrent - len(self._supervisors)
        if available <= 0:
            return []

        candidates = self.store.admissible_jobs(
            available + len(self._supervisors),
            self.config.max_recovery_attempts,
            now=utcnow(),
        )
        admitted = []
        for job in candidates:
            if len(admitted) >= available:
                break
            if job.id in self._supervisors:
                continue
            self.store.set_job_status(job.id, JobStatus.STARTING)
            self._supervisors[job.id] = asyncio.create_task(self._supervise(job.id), name=f"stream-{job.id}")
            admitted.append(job.id)

        if admitted:
            logger.info("Admitted %d job(s); %d active", len(admitted), len(self._supervisors))
        return admitted

    async def _supervise(self, job_id: str) -> None:
        index: Optional[int] = None
        try:
            job = self.store.get_job(job_id)
            index = self._resume_index(job) if job else 0
            while index is not None:
                process = await self._start_stream(job_id, index)
                if process is None:
                    return
                index = await self._wait_for_exit(job_id, process, index)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Supervisor for job %s crashed", job_id)
        finally:
            self._supervisors.pop(job_id, None)

    def _resume_index(self, job: StreamJob) -> int:
        """A recovering playlist job resumes at the item that failed."""
        if not job.recovery_attempts or len(job.playlist_ids) <= 1:
            return 0
        session = self.store.latest_session(job.id)
        return session.current_video_index if session and session.current_video_index else 0

    def _stop_requested(self, job_id: str) -> bool:
        return self.store.get_job_status(job_id) in STOP_STATUSES

    def _abort_start(self, job_id: str) -> None:
        if self.store.get_job_status(job_id) is JobStatus.CIRCUIT_BREAKER:
            self.store.finalize_sessions(job_id, SessionStatus.FAILED, error=self._breaker_message(), only_live=True)
        else:
            self.store.finalize_job(job_id, JobStatus.STOPPED, SessionStatus.STOPPED)

    async def _start_stream(self, job_id: str, index: int) -> Optional[Process]:
        if self._stop_requested(job_id):
            logger.info("Job %s was stopped before it started", job_id)
            self._abort_start(job_id)
            return None
        self.store.set_job_status(job_id, JobStatus.STARTING)
        process: Optional[Process] = None
        try:
            job = self.store.get_job(job_id)
            if job is None:
                raise ConfigurationError(f"Job {job_id} no longer exists")
            page = self.store.get_page(job.page_id)
            credentials = self.store.app_credentials()
            playlist = job.playlist_ids
            video_id = playlist[playlist_index(index, len(playlist))] if playlist else job.video_id
            video = self.store.get_video(video_id)
            if page is None or video is None or credentials is None:
                raise ConfigurationError("Missing stream components")
            profile = self._load_profile(job)

            target = await self._resolve_broadcast(job, video.filename, index)

            builder = FfmpegCommandBuilder(video.path, hardware=self.hardware).apply_profile(profile)
            loop = should_loop_process(len(playlist), job.loop_mode)
            args = await asyncio.to_thread(builder.for_streaming, target.stream_url, loop)

            if self._stop_requested(job_id):
                logger.info("Job %s was stopped while starting", job_id)
                self._abort_start(job_id)
                return None

            logger.info("Spawning ffmpeg for job %s (item %d): %s", job_id, index, " ".join(args))
            process = await self.spawn([self.config.ffmpeg_path, *args])
            self.active_streams[job_id] = process

            if index == 0:
                # At most one live session per job.
                self.store.finalize_sessions(job_id, SessionStatus.STOPPED, only_live=True)
                self.store.insert_session(job_id, target, index)
            else:
                self.store.mark_session_live(job_id, index)

            # A stop that arrived during the spawn is finalized by the exit path.
            if self._stop_requested(job_id):
                self._terminate(process)
            else:
                self.store.set_job_status(job_id, JobStatus.LIVE)
            return process
        except Exception as exc:  # noqa: BLE001
            message = FacebookClient.extract_error(exc) if isinstance(exc, FacebookAPIError) else (str(exc) or repr(exc))
            logger.error("Stream failure for job %s: %s", job_id, message)
            if process is not None:
                self.active_streams.pop(job_id, None)
                self._terminate(process)
            self.store.record_start_failure(job_id, message)
            await self._notify(job_id, JobStatus.FAILED, message)
            return None

    def _load_profile(self, job: StreamJob) -> EditingProfile:
        if not job.editing_profile_id:
            return EditingProfile()
        record = self.store.get_profile(job.editing_profile_id)
        if record is None:
            raise ConfigurationError(f"Editing profile {job.editing_profile_id} not found")
        return parse_profile(record.data)

    async def _resolve_broadcast(self, job: StreamJob, filename: str, index: int) -> BroadcastTarget:
        """Reuse the job's broadcast when advancing or recovering; otherwise create one."""
        existing = self.store.latest_session(job.id, REUSABLE_SESSION_STATUSES)
        if existing is not None and existing.live_video_id and existing.stream_url and (index > 0 or job.recovery_attempts > 0):
            logger.info("Reusing live video %s for job %s", existing.live_video_id, job.id)
            return BroadcastTarget(
                live_video_id=existing.live_video_id,
                stream_url=existing.stream_url,
                vod_video_id=existing.vod_video_id,
            )

        title = job.title_template or f"Live: {filename}"
        description = job.description_template or DEFAULT_DESCRIPTION
        logger.info("Creating live video for job %s", job.id)
        return await self.credentials.call(
            job.page_id,
            lambda client, token: client.create_live_video(job.page_id, token, title, description),
        )

    # -------------------------------------------------------------------- exits

    async def _wait_for_exit(self, job_id: str, process: Process, index: int) -> Optional[int]:
        reader = asyncio.create_task(self._watch_output(job_id, process), name=f"ffmpeg-stderr-{job_id}")
        try:
            exit_code = await process.wait()
        finally:
            try:
                await asyncio.wait_for(reader, timeout=5)
            except asyncio.TimeoutError:
                reader.cancel()
        return await self._handle_exit(job_id, exit_code, index)

    async def _watch_output(self, job_id: str, process: Process) -> None:
        if process.stderr is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        carry = ""
        while True:
            chunk = await process.stderr.read(STDERR_CHUNK)
            if not chunk:
                return
            # Progress lines end in \r; only parse complete ones.
            *lines, carry = _LINE_BREAK.split(carry + decoder.decode(chunk))
            carry = carry[-STDERR_CHUNK:]
            fps, bitrate = parse_progress("\n".join(lines))
            if fps is None and bitrate is None:
                continue
            try:
                self.store.update_session_metrics(job_id, fps, bitrate)
            except SQLAlchemyError as exc:
                logger.warning("Could not record metrics for job %s: %s", job_id, exc)

    async def _handle_exit(self, job_id: str, exit_code: Optional[int], index: int) -> Optional[int]:
        """Apply the exit decision; returns the next playlist index to start, if any."""
        self.active_streams.pop(job_id, None)
        job = self.store.get_job(job_id)
        if job is None:
            logger.warning("Job %s disappeared while its process was running", job_id)
            return None

        status = JobStatus(job.status)
        decision = decide_exit(
            status,
            exit_code,
            job.loop_mode,
            len(job.playlist_ids),
            index,
            job.recovery_attempts,
            self.config.max_recovery_attempts,
        )
        logger.info("ffmpeg for job %s exited with code %s: %s", job_id, exit_code, decision.action.value)
        return await self._apply_exit(job_id, exit_code, decision)

    async def _apply_exit(self, job_id: str, exit_code: Optional[int], decision: ExitDecision) -> Optional[int]:
        if decision.action is ExitAction.RESTART:
            return decision.next_index

        if decision.action is ExitAction.FINALIZE_STOPPED:
            self.store.finalize_job(job_id, JobStatus.STOPPED, SessionStatus.STOPPED)
            return None

        if decision.action is ExitAction.HALT:
            message = self._breaker_message()
            self.store.finalize_sessions(job_id, SessionStatus.FAILED, error=message, only_live=True)
            await self._notify(job_id, JobStatus.CIRCUIT_BREAKER, message)
            return None

        message = f"Process exited with code {exit_code}"
        self.store.record_process_failure(job_id, decision.attempts or 0, decision.job_status, message)
        logger.warning(
            "Stream %s failed with code %s, recovery attempt %s/%s",
            job_id,
            exit_code,
            decision.attempts,
            self.config.max_recovery_attempts,
        )
        if decision.action is ExitAction.FAIL:
            await self._notify(job_id, JobStatus.FAILED, message)
        return None

    def _breaker_message(self) -> str:
        return f"Circuit breaker tripped after {self.config.max_api_failures} consecutive API failures"

    async def _notify(self, job_id: str, status: JobStatus, detail: str) -> None:
        # Webhook and SMTP sends block; keep them off the event loop.
        await asyncio.to_thread(self.notifier.notify_job, job_id, status, detail)

    @staticmethod
    def _terminate(process: Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    # ------------------------------------------------------------------ control

    async def stop_stream(self, job_id: str) -> None:
        self.store.set_job_status(job_id, JobStatus.STOPPING)
        process = self.active_streams.get(job_id)
        if process is not None:
            logger.info("Stopping ffmpeg for job %s", job_id)
            self._terminate(process)
        elif job_id in self._supervisors:
            logger.info("Job %s is still starting; it will stop before spawning", job_id)
        else:
            logger.info("Force stopping job %s (no active process)", job_id)
            self.store.finalize_job(job_id, JobStatus.STOPPED, SessionStatus.STOPPED)

    async def stop_all_streams(self) -> None:
        logger.info("Stopping all streams")
        for job_id in list(self._supervisors):
            await self.stop_stream(job_id)

        for job in self.store.jobs_with_status((JobStatus.LIVE, JobStatus.STOPPING, JobStatus.STARTING)):
            if job.id in self.active_streams or job.id in self._supervisors:
                continue
            logger.info("Cleaning up orphaned job %s", job.id)
            self.store.finalize_job(job.id, JobStatus.STOPPED, SessionStatus.STOPPED)

    def restart_job(self, job_id: str) -> None:
        if job_id in self._supervisors:
            raise JobConflictError(f"Job {job_id} is running; stop it first")
        status = self.store.get_job_status(job_id)
        if status is None:
            raise NotFoundError(f"Job {job_id} not found")
        if not can_transition(status, JobStatus.QUEUED) and status is not JobStatus.QUEUED:
            raise JobConflictError(f"Job {job_id} cannot be restarted from {status.value}")
        self.store.restart_job(job_id)
        logger.info("Job %s requeued", job_id)

    def create_jobs(
        self,
        page_ids: Sequence[str],
        video_ids: Sequence[str],
        *,
        editing_profile_id: Optional[str] = None,
        title_template: Optional[str] = None,
        description_template: Optional[str] = None,
        first_comment: Optional[str] = None,
        scheduled_time: Optional[dt.datetime] = None,
        loop: LoopMode = LoopMode.LOOP_ALL,
        priority: int = 1,
    ) -> List[str]:
        if editing_profile_id and self.store.get_profile(editing_profile_id) is None:
            raise ConfigurationError(f"Editing profile {editing_profile_id} not found")
        job_ids = self.store.create_jobs(
            page_ids,
            video_ids,
            editing_profile_id=editing_profile_id,
            title_template=title_template,
            description_template=description_template,
            first_comment=first_comment,
            scheduled_time=scheduled_time,
            loop=loop,
            priority=priority,
        )
        logger.info("Queued %d job(s) for %d video(s)", len(job_ids), len(video_ids))
        return job_ids

    def list_jobs(self, limit: int = 50) -> List[JobSummary]:
        return self.store.list_jobs(limit)

    async def update_metadata(self, job_id: str, title: Optional[str], description: Optional[str]) -> None:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        session = self.store.live_session(job_id)
        if session is None or not session.live_video_id:
            raise ConfigurationError(f"Job {job_id} has no live broadcast")
        await self.credentials.call(
            job.page_id,
            lambda client, token: client.update_live_video(session.live_video_id, token, title, description),
        )
        self.store.update_job_templates(job_id, title, description)

    # ------------------------------------------------------------------ polling

    async def poll_viewer_stats(self) -> None:
        if self.store.app_credentials() is None:
            return
        cutoff = utcnow() - dt.timedelta(seconds=self.config.viewer_poll_interval)
        sessions = self.store.pollable_sessions(cutoff)
        if not sessions:
            return
        await asyncio.gather(*(self._poll_session(session) for session in sessions))

    async def _poll_session(self, session: PolledSession) -> None:
        try:
            still_live = await self._check_remote(session)
            if still_live:
                await self._maybe_post_comment(session)
        except Exception:  # noqa: BLE001
            logger.exception("Viewer poll failed for job %s", session.job_id)

    async def _check_remote(self, session: PolledSession) -> bool:
        """Record viewers or react to the broadcast going away. False once the session is over."""
        try:
            state = await self.credentials.call(
                session.page_id,
                lambda client, token: client.get_live_video_state(session.live_video_id, token),
            )
        except (FacebookAPIError, requests.RequestException, ConfigurationError) as exc:
            failures = self.store.increment_api_failures(session.session_id)
            logger.warning(
                "API failure %d/%d for job %s: %s",
                failures,
                self.config.max_api_failures,
                session.job_id,
                exc,
            )
            if failures >= self.config.max_api_failures:
                await self._trip_circuit_breaker(session.job_id)
                return False
            return True

        self.store.reset_api_failures(session.session_id)
        if not state.is_live:
            logger.info("Live video %s reported %s; stopping job %s", session.live_video_id, state.status, session.job_id)
            await self.stop_stream(session.job_id)
            await self._notify(session.job_id, JobStatus.STOPPED, f"Broadcast ended remotely ({state.status})")
            return False

        self.store.bump_peak_viewers(session.session_id, state.live_views)
        return True

    async def _trip_circuit_breaker(self, job_id: str) -> None:
        logger.error("Circuit breaker tripped for job %s", job_id)
        self.store.set_job_status(job_id, JobStatus.CIRCUIT_BREAKER)
        process = self.active_streams.get(job_id)
        if process is not None:
            self._terminate(process)
        elif job_id not in self._supervisors:
            message = self._breaker_message()
            self.store.finalize_sessions(job_id, SessionStatus.FAILED, error=message, only_live=True)
            await self._notify(job_id, JobStatus.CIRCUIT_BREAKER, message)

    async def _maybe_post_comment(self, session: PolledSession) -> None:
        if not session.first_comment or session.comment_posted or session.started_at is None:
            return
        if (utcnow() - session.started_at).total_seconds() <= self.config.comment_delay:
            return
        target = session.comment_target
        if not target:
            return

        try:
            await self.credentials.call(
                session.page_id,
                lambda client, token: client.post_comment(target, token, session.first_comment),
            )
        except FacebookAPIError as exc:
            log = logger.warning if exc.status_code == 400 else logger.error
            log("Auto-comment for job %s failed: %s", session.job_id, FacebookClient.extract_error(exc))
            return
        except (requests.RequestException, ConfigurationError) as exc:
            logger.error("Auto-comment for job %s failed: %s", session.job_id, exc)
            return

        if self.store.mark_comment_posted(session.session_id):
            logger.info("Posted first comment for job %s on %s", session.job_id, target)
