"""
Bulk Streamer Test Configuration

Shared fixtures: in-memory job store, throwaway vault key, a fake encoder
process and a mocked Graph client.
"""

import asyncio
import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Callable, List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

# web.py builds its app at import time; point it at throwaway storage first.
os.environ.setdefault("BULK_STREAMER_DATABASE_URL", "sqlite://")
os.environ.setdefault("BULK_STREAMER_KEY_PATH", str(Path(tempfile.mkdtemp()) / ".key"))

from bulk_streamer.config import OrchestratorConfig
from bulk_streamer.facebook_client import FacebookClient
from bulk_streamer.hardware import EncoderSupport, HardwareDetector, HardwareInfo
from bulk_streamer.models import BroadcastTarget, LiveVideoStatus, PageToken, utcnow
from bulk_streamer.notifier import Notifier
from bulk_streamer.store import JobStore
from bulk_streamer.stream_manager import StreamOrchestrator
from bulk_streamer.tables import StreamJob, StreamSession
from bulk_streamer.vault import CredentialVault


# ============ Fakes ============


class FakeProcess:
    """Stands in for an asyncio subprocess; the test decides when it exits."""

    def __init__(self, pid: int):
        self.pid = pid
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.terminated = False
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    def emit(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))

    def terminate(self) -> None:
        self.terminated = True
        self.exit(255)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self):
        self.calls: List[List[str]] = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, command):
        self.calls.append(list(command))
        process = FakeProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def make_hardware(**encoders) -> HardwareDetector:
    """A detector with a pre-filled cache so ffmpeg is never queried."""
    detector = HardwareDetector("ffmpeg")
    detector._cached = HardwareInfo(cpu="test-cpu", encoders=EncoderSupport(**encoders))
    return detector


async def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition was not met in time")
        await asyncio.sleep(0.01)


def backdate_session(store: JobStore, job_id: str, seconds: float) -> None:
    with store.engine.begin() as connection:
        connection.execute(
            update(StreamSession)
            .where(StreamSession.job_id == job_id)
            .values(started_at=utcnow() - dt.timedelta(seconds=seconds))
        )


def set_created_at(store: JobStore, job_id: str, created_at) -> None:
    with store.engine.begin() as connection:
        connection.execute(update(StreamJob).where(StreamJob.id == job_id).values(created_at=created_at))


# ============ Core Fixtures ============


@pytest.fixture
def store() -> JobStore:
    return JobStore("sqlite://")


@pytest.fixture
def vault(tmp_path: Path) -> CredentialVault:
    return CredentialVault(tmp_path / ".key")


@pytest.fixture
def hardware() -> HardwareDetector:
    return make_hardware()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def graph_client() -> MagicMock:
    client = MagicMock(spec=FacebookClient)
    client.app_id = "app-id"
    client.app_secret = "app-secret"
    client.create_live_video.return_value = BroadcastTarget(
        live_video_id="lv1", stream_url="rtmps://live-api-s.facebook.com:443/rtmp/key1", vod_video_id="vod1"
    )
    client.get_live_video_state.return_value = LiveVideoStatus(status="LIVE", live_views=10)
    client.post_comment.return_value = "comment-1"
    client.sync_page_tokens.return_value = [PageToken(id="page1", name="Page One", access_token="fresh-token")]
    client.check_insights.return_value = True
    return client


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    return OrchestratorConfig(max_concurrent=2, viewer_poll_interval=0, comment_delay=15)


@pytest.fixture
def orchestrator(store, vault, graph_client, hardware, spawner, notifier, orchestrator_config) -> StreamOrchestrator:
    return StreamOrchestrator(
        store,
        vault,
        orchestrator_config,
        client_factory=lambda *args, **kwargs: graph_client,
        hardware=hardware,
        spawn=spawner,
        notifier=notifier,
    )


@pytest.fixture
def seeded(store: JobStore, vault: CredentialVault):
    """App credentials, a user token, one page and three videos."""
    store.save_account("app-id", "app-secret", vault.encrypt("user-token"))
    store.upsert_page("page1", "Page One", vault.encrypt("page-token"), category="Media")
    videos = [
        store.add_video(f"/media/{name}.mp4", video_id=f"video-{name}")
        for name in ("a", "b", "c")
    ]
    return [video.id for video in videos]
