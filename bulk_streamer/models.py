"""Domain models for stream jobs and broadcast sessions."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

from dateutil.tz import tzutc


class JobStatus(str, Enum):
    QUEUED = "queued"
    STARTING = "starting"
    LIVE = "live"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    FAILED_RECOVERY = "failed_recovery"
    CIRCUIT_BREAKER = "circuit_breaker"


class SessionStatus(str, Enum):
    LIVE = "live"
    STOPPED = "stopped"
    FAILED = "failed"


class LoopMode(IntEnum):
    OFF = 0
    LOOP_ALL = 1
    LOOP_ONE = 2


ADMISSIBLE_STATUSES = (JobStatus.QUEUED, JobStatus.FAILED_RECOVERY)

# Session states whose broadcast object may be picked up again on restart.
REUSABLE_SESSION_STATUSES = (SessionStatus.LIVE, SessionStatus.FAILED, SessionStatus.STOPPED)

# Remote statuses that mean the broadcast is still on air.
REMOTE_LIVE_STATUSES = frozenset({"LIVE", "LIVE_NOW"})


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, the form stored in the job store."""
    return dt.datetime.now(tzutc()).replace(tzinfo=None)


def to_naive_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(tzutc()).replace(tzinfo=None)


@dataclass
class BroadcastTarget:
    live_video_id: str
    stream_url: str
    vod_video_id: Optional[str] = None


@dataclass
class LiveVideoStatus:
    status: Optional[str]
    live_views: int = 0

    @property
    def is_live(self) -> bool:
        return self.status in REMOTE_LIVE_STATUSES


@dataclass
class PageToken:
    id: str
    name: str
    access_token: str
    category: Optional[str] = None


@dataclass
class PolledSession:
    """A live session row joined with the job fields the viewer poll needs."""

    session_id: str
    job_id: str
    page_id: str
    live_video_id: Optional[str]
    vod_video_id: Optional[str]
    started_at: Optional[dt.datetime]
    comment_posted: bool
    api_fail_count: int
    first_comment: Optional[str]

    @property
    def comment_target(self) -> Optional[str]:
        return self.vod_video_id or self.live_video_id


@dataclass
class JobSummary:
    id: str
    page_id: str
    page_name: Optional[str]
    video_id: str
    video_name: Optional[str]
    status: str
    priority: int
    loop: int
    playlist: Optional[list]
    scheduled_time: Optional[dt.datetime]
    recovery_attempts: int
    created_at: Optional[dt.datetime]
    session_status: Optional[str] = None
    peak_viewers: Optional[int] = None
    bitrate: Optional[str] = None
    fps: Optional[float] = None
    current_video_index: Optional[int] = None
    error_log: Optional[str] = None
