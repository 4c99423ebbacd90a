"""Job store: the orchestrator's only persistence.

All access is synchronous and short-lived; every public method opens its own
session and commits before returning. Returned ORM objects are detached.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from sqlalchemy import create_engine, delete, event, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    ADMISSIBLE_STATUSES,
    BroadcastTarget,
    JobStatus,
    JobSummary,
    LoopMode,
    PolledSession,
    SessionStatus,
    utcnow,
)
from .tables import Base, BrandKit, EditingProfileRecord, Page, Setting, StreamJob, StreamSession, Video
from .vault import EncryptedSecret

logger = logging.getLogger(__name__)

APP_ID_KEY = "app_id"
APP_SECRET_KEY = "app_secret"
USER_TOKEN_KEYS = ("user_token_encrypted", "user_token_nonce", "user_token_tag")

RESET_SCOPES: Dict[str, Tuple[type, ...]] = {
    "streams": (StreamSession, StreamJob),
    "videos": (StreamSession, StreamJob, Video),
    "pages": (StreamSession, StreamJob, Page),
    "profiles": (EditingProfileRecord,),
    "all-keep-credentials": (StreamSession, StreamJob, Video, Page, EditingProfileRecord),
    "content-only": (StreamSession, StreamJob, Video, EditingProfileRecord),
    "database": (StreamSession, StreamJob, Video, Page, EditingProfileRecord, BrandKit, Setting),
}

# Resets that invalidate running streams.
STREAM_RESET_SCOPES = frozenset({"streams", "videos", "pages", "all-keep-credentials", "content-only", "database"})


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_store_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(database_url, pool_pre_ping=True)


class JobStore:
    """Keyed CRUD plus the filtered/joined queries the orchestrator relies on."""

    def __init__(self, database_url: str = "sqlite:///bulk_streamer.db", engine: Optional[Engine] = None):
        self.engine = engine or create_store_engine(database_url)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------------------------------------------------------------- settings

    def get_setting(self, key: str) -> Optional[str]:
        with self._session() as session:
            row = session.get(Setting, key)
            return row.value if row else None

    def set_settings(self, values: Dict[str, Optional[str]]) -> None:
        with self._session() as session:
            for key, value in values.items():
                session.merge(Setting(key=key, value=value))

    def app_credentials(self) -> Optional[Tuple[str, str]]:
        app_id = self.get_setting(APP_ID_KEY)
        app_secret = self.get_setting(APP_SECRET_KEY)
        if not app_id or not app_secret:
            return None
        return app_id, app_secret

    def user_token_secret(self) -> Optional[EncryptedSecret]:
        ciphertext, nonce, tag = (self.get_setting(key) for key in USER_TOKEN_KEYS)
        if not ciphertext or not nonce or not tag:
            return None
        return EncryptedSecret(ciphertext=ciphertext, nonce=nonce, tag=tag)

    def save_account(self, app_id: str, app_secret: str, user_token: EncryptedSecret) -> None:
        self.set_settings(
            {
                APP_ID_KEY: app_id,
                APP_SECRET_KEY: app_secret,
                USER_TOKEN_KEYS[0]: user_token.ciphertext,
                USER_TOKEN_KEYS[1]: user_token.nonce,
                USER_TOKEN_KEYS[2]: user_token.tag,
            }
        )

    # ------------------------------------------------------------------ videos

    def add_video(
        self,
        path: str,
        title: Optional[str] = None,
        duration: Optional[int] = None,
        resolution: Optional[str] = None,
        video_id: Optional[str] = None,
    ) -> Video:
        video = Video(
            id=video_id or str(uuid.uuid4()),
            filename=Path(path).name,
            path=path,
            title=title,
            duration=duration,
            resolution=resolution,
            created_at=utcnow(),
        )
        with self._session() as session:
            session.add(video)
        return video

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._session() as session:
            return session.get(Video, video_id)

    def list_videos(self) -> List[Video]:
        with self._session() as session:
            return list(session.scalars(select(Video).order_by(Video.created_at.desc())))

    def delete_video(self, video_id: str) -> bool:
        with self._session() as session:
            job_ids = select(StreamJob.id).where(StreamJob.video_id == video_id)
            session.execute(delete(StreamSession).where(StreamSession.job_id.in_(job_ids)))
            session.execute(delete(StreamJob).where(StreamJob.video_id == video_id))
            return session.execute(delete(Video).where(Video.id == video_id)).rowcount > 0

    # ------------------------------------------------------------------- pages

    def upsert_page(
        self,
        page_id: str,
        name: str,
        token: EncryptedSecret,
        category: Optional[str] = None,
        fan_count: int = 0,
        followers_count: int = 0,
        created_time: Optional[str] = None,
        picture_url: Optional[str] = None,
    ) -> Page:
        page = Page(
            id=page_id,
            name=name,
            access_token_encrypted=token.ciphertext,
            access_token_nonce=token.nonce,
            access_token_tag=token.tag,
            category=category,
            fan_count=fan_count,
            followers_count=followers_count,
            created_time=created_time,
            last_checked=utcnow(),
            picture_url=picture_url,
        )
        with self._session() as session:
            return session.merge(page)

    def get_page(self, page_id: str) -> Optional[Page]:
        with self._session() as session:
            return session.get(Page, page_id)

    def list_pages(self) -> List[Page]:
        with self._session() as session:
            return list(session.scalars(select(Page).order_by(Page.name)))

    @staticmethod
    def page_secret(page: Page) -> EncryptedSecret:
        return EncryptedSecret(
            ciphertext=page.access_token_encrypted,
            nonce=page.access_token_nonce,
            tag=page.access_token_tag,
        )

    def replace_page_tokens(self, tokens: Dict[str, EncryptedSecret]) -> int:
        """Swap in refreshed tokens for every known page in one transaction."""
        updated = 0
        with self._session() as session:
            for page_id, secret in tokens.items():
                result = session.execute(
                    update(Page)
                    .where(Page.id == page_id)
                    .values(
                        access_token_encrypted=secret.ciphertext,
                        access_token_nonce=secret.nonce,
                        access_token_tag=secret.tag,
                    )
                )
                updated += result.rowcount
        return updated

    def update_page_details(self, page_id: str, **fields: Any) -> bool:
        fields["last_checked"] = utcnow()
        with self._session() as session:
            return session.execute(update(Page).where(Page.id == page_id).values(**fields)).rowcount > 0

    # ---------------------------------------------------------------- profiles

    def save_profile(self, name: str, data: Union[str, Dict[str, Any]], profile_id: Optional[str] = None) -> EditingProfileRecord:
        record = EditingProfileRecord(
            id=profile_id or str(uuid.uuid4()),
            name=name,
            data=data if isinstance(data, str) else json.dumps(data),
            created_at=utcnow(),
        )
        with self._session() as session:
            return session.merge(record)

    def get_profile(self, profile_id: str) -> Optional[EditingProfileRecord]:
        with self._session() as session:
            return session.get(EditingProfileRecord, profile_id)

    def list_profiles(self) -> List[EditingProfileRecord]:
        with self._session() as session:
            return list(session.scalars(select(EditingProfileRecord).order_by(EditingProfileRecord.created_at.desc())))

    def delete_profile(self, profile_id: str) -> bool:
        with self._session() as session:
            session.execute(
                update(StreamJob).where(StreamJob.editing_profile_id == profile_id).values(editing_profile_id=None)
            )
            return session.execute(delete(EditingProfileRecord).where(EditingProfileRecord.id == profile_id)).rowcount > 0

    # -------------------------------------------------------------- brand kits

    def save_brand_kit(
        self,
        name: str,
        *,
        logo_path: Optional[str] = None,
        logo_position: Optional[str] = None,
        logo_opacity: Optional[float] = None,
        logo_scale: Optional[float] = None,
        colors: Optional[Dict[str, Any]] = None,
        kit_id: Optional[str] = None,
    ) -> BrandKit:
        kit = BrandKit(
            id=kit_id or str(uuid.uuid4()),
            name=name,
            logo_path=logo_path or None,
            logo_position=logo_position or "BR",
            logo_opacity=1.0 if logo_opacity is None else logo_opacity,
            logo_scale=0.15 if logo_scale is None else logo_scale,
            colors=json.dumps(colors) if colors else None,
            created_at=utcnow(),
        )
        with self._session() as session:
            return session.merge(kit)

    def get_brand_kit(self, kit_id: str) -> Optional[BrandKit]:
        with self._session() as session:
            return session.get(BrandKit, kit_id)

    def list_brand_kits(self) -> List[BrandKit]:
        with self._session() as session:
            return list(session.scalars(select(BrandKit).order_by(BrandKit.created_at.desc())))

    def delete_brand_kit(self, kit_id: str) -> bool:
        with self._session() as session:
            return session.execute(delete(BrandKit).where(BrandKit.id == kit_id)).rowcount > 0

    # -------------------------------------------------------------------- jobs

    def create_jobs(
        self,
        page_ids: Sequence[str],
        video_ids: Sequence[str],
        editing_profile_id: Optional[str] = None,
        title_template: Optional[str] = None,
        description_template: Optional[str] = None,
        first_comment: Optional[str] = None,
        scheduled_time: Optional[dt.datetime] = None,
        loop: LoopMode = LoopMode.LOOP_ALL,
        priority: int = 1,
    ) -> List[str]:
        """One job per destination; several contents become that job's playlist."""
        if not page_ids or not video_ids:
            raise ValueError("At least one page and one video are required")
        playlist = json.dumps(list(video_ids)) if len(video_ids) > 1 else None
        now = utcnow()
        jobs = [
            StreamJob(
                id=str(uuid.uuid4()),
                page_id=page_id,
                video_id=video_ids[0],
                editing_profile_id=editing_profile_id or None,
                title_template=title_template or None,
                description_template=description_template or None,
                first_comment=first_comment or None,
                scheduled_time=scheduled_time,
                status=JobStatus.QUEUED.value,
                priority=priority,
                loop=int(loop),
                playlist=playlist,
                recovery_attempts=0,
                created_at=now,
            )
            for page_id in page_ids
        ]
        with self._session() as session:
            session.add_all(jobs)
        return [job.id for job in jobs]

    def get_job(self, job_id: str) -> Optional[StreamJob]:
        with self._session() as session:
            return session.get(StreamJob, job_id)

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        with self._session() as session:
            status = session.scalar(select(StreamJob.status).where(StreamJob.id == job_id))
        return JobStatus(status) if status else None

    def list_jobs(self, limit: int = 50) -> List[JobSummary]:
        with self._session() as session:
            rows = session.execute(
                select(StreamJob, Page.name, Video.filename)
                .outerjoin(Page, StreamJob.page_id == Page.id)
                .outerjoin(Video, StreamJob.video_id == Video.id)
                .order_by(StreamJob.created_at.desc())
                .limit(limit)
            ).all()
            job_ids = [job.id for job, _, _ in rows]
            latest: Dict[str, StreamSession] = {}
            if job_ids:
                sessions = session.scalars(
                    select(StreamSession)
                    .where(StreamSession.job_id.in_(job_ids))
                    .order_by(StreamSession.started_at.desc())
                )
                for stream_session in sessions:
                    latest.setdefault(stream_session.job_id, stream_session)

        summaries = []
        for job, page_name, video_name in rows:
            current = latest.get(job.id)
            summaries.append(
                JobSummary(
                    id=job.id,
                    page_id=job.page_id,
                    page_name=page_name,
                    video_id=job.video_id,
                    video_name=video_name,
                    status=job.status,
                    priority=job.priority,
                    loop=job.loop,
                    playlist=job.playlist_ids or None,
                    scheduled_time=job.scheduled_time,
                    recovery_attempts=job.recovery_attempts,
                    created_at=job.created_at,
                    session_status=current.status if current else None,
                    peak_viewers=current.peak_viewers if current else None,
                    bitrate=current.bitrate if current else None,
                    fps=current.fps if current else None,
                    current_video_index=current.current_video_index if current else None,
                    error_log=current.error_log if current else None,
                )
            )
        return summaries

    def admissible_jobs(self, limit: int, max_attempts: int, now: Optional[dt.datetime] = None) -> List[StreamJob]:
        """Queued or retryable jobs that are due, highest priority first, FIFO within a priority."""
        if limit <= 0:
            return []
        now = now or utcnow()
        statement = (
            select(StreamJob)
            .where(StreamJob.status.in_([status.value for status in ADMISSIBLE_STATUSES]))
            .where(or_(StreamJob.scheduled_time.is_(None), StreamJob.scheduled_time <= now))
            .where(func.coalesce(StreamJob.recovery_attempts, 0) < max_attempts)
            .order_by(StreamJob.priority.desc(), StreamJob.created_at.asc())
            .limit(limit)
        )
        with self._session() as session:
            return list(session.scalars(statement))

    def jobs_with_status(self, statuses: Iterable[JobStatus]) -> List[StreamJob]:
        with self._session() as session:
            return list(session.scalars(select(StreamJob).where(StreamJob.status.in_([s.value for s in statuses]))))

    def set_job_status(self, job_id: str, status: JobStatus) -> None:
        with self._session() as session:
            session.execute(update(StreamJob).where(StreamJob.id == job_id).values(status=status.value))

    def record_process_failure(self, job_id: str, attempts: int, status: JobStatus, error: str) -> None:
        with self._session() as session:
            session.execute(
                update(StreamJob).where(StreamJob.id == job_id).values(status=status.value, recovery_attempts=attempts)
            )
            current = self._latest_session(session, job_id)
            if current is not None:
                current.status = SessionStatus.FAILED.value
                current.error_log = error
                current.ended_at = utcnow()

    def restart_job(self, job_id: str) -> bool:
        """Requeue for immediate admission. The recovery counter is left alone."""
        with self._session() as session:
            result = session.execute(
                update(StreamJob)
                .where(StreamJob.id == job_id)
                .values(status=JobStatus.QUEUED.value, scheduled_time=utcnow())
            )
            return result.rowcount > 0

    def update_job_templates(self, job_id: str, title: Optional[str], description: Optional[str]) -> None:
        values: Dict[str, Any] = {}
        if title:
            values["title_template"] = title
        if description:
            values["description_template"] = description
        if not values:
            return
        with self._session() as session:
            session.execute(update(StreamJob).where(StreamJob.id == job_id).values(**values))

    # ---------------------------------------------------------------- sessions

    @staticmethod
    def _latest_session(session: Session, job_id: str, statuses: Optional[Iterable[SessionStatus]] = None) -> Optional[StreamSession]:
        statement = select(StreamSession).where(StreamSession.job_id == job_id)
        if statuses is not None:
            statement = statement.where(StreamSession.status.in_([s.value for s in statuses]))
        return session.scalars(statement.order_by(StreamSession.started_at.desc()).limit(1)).first()

    def latest_session(self, job_id: str, statuses: Optional[Iterable[SessionStatus]] = None) -> Optional[StreamSession]:
        with self._session() as session:
            return self._latest_session(session, job_id, statuses)

    def live_session(self, job_id: str) -> Optional[StreamSession]:
        return self.latest_session(job_id, (SessionStatus.LIVE,))

    def insert_session(self, job_id: str, target: BroadcastTarget, video_index: int = 0) -> StreamSession:
        record = StreamSession(
            id=str(uuid.uuid4()),
            job_id=job_id,
            live_video_id=target.live_video_id,
            vod_video_id=target.vod_video_id,
            stream_url=target.stream_url,
            started_at=utcnow(),
            status=SessionStatus.LIVE.value,
            peak_viewers=0,
            current_video_index=video_index,
            comment_posted=False,
            api_fail_count=0,
        )
        with self._session() as session:
            session.add(record)
        return record

    def mark_session_live(self, job_id: str, video_index: int) -> Optional[StreamSession]:
        with self._session() as session:
            current = self._latest_session(session, job_id)
            if current is None:
                return None
            current.status = SessionStatus.LIVE.value
            current.current_video_index = video_index
            current.ended_at = None
            current.error_log = None
            return current

    def update_session_metrics(self, job_id: str, fps: Optional[float], bitrate: Optional[str]) -> None:
        values: Dict[str, Any] = {}
        if fps is not None:
            values["fps"] = fps
        if bitrate is not None:
            values["bitrate"] = bitrate
        if not values:
            return
        with self._session() as session:
            session.execute(
                update(StreamSession)
                .where(StreamSession.job_id == job_id, StreamSession.status == SessionStatus.LIVE.value)
                .values(**values)
            )

    def finalize_sessions(self, job_id: str, status: SessionStatus, error: Optional[str] = None, only_live: bool = False) -> int:
        values: Dict[str, Any] = {"status": status.value, "ended_at": utcnow()}
        if error is not None:
            values["error_log"] = error
        statement = update(StreamSession).where(StreamSession.job_id == job_id)
        if only_live:
            statement = statement.where(StreamSession.status == SessionStatus.LIVE.value)
        with self._session() as session:
            return session.execute(statement.values(**values)).rowcount

    def finalize_job(self, job_id: str, job_status: JobStatus, session_status: SessionStatus, error: Optional[str] = None) -> None:
        """Terminal transition for a job and its live session(s)."""
        self.set_job_status(job_id, job_status)
        self.finalize_sessions(job_id, session_status, error=error, only_live=True)

    def record_start_failure(self, job_id: str, message: str) -> None:
        """Job goes straight to ``failed``; the error lands on its latest session or a new one."""
        with self._session() as session:
            session.execute(update(StreamJob).where(StreamJob.id == job_id).values(status=JobStatus.FAILED.value))
            current = self._latest_session(session, job_id)
            if current is None:
                session.add(
                    StreamSession(
                        id=str(uuid.uuid4()),
                        job_id=job_id,
                        started_at=utcnow(),
                        ended_at=utcnow(),
                        status=SessionStatus.FAILED.value,
                        error_log=message,
                    )
                )
            else:
                current.status = SessionStatus.FAILED.value
                current.error_log = message
                current.ended_at = utcnow()

    def pollable_sessions(self, started_before: dt.datetime) -> List[PolledSession]:
        statement = (
            select(StreamSession, StreamJob.page_id, StreamJob.first_comment)
            .join(StreamJob, StreamSession.job_id == StreamJob.id)
            .where(StreamSession.status == SessionStatus.LIVE.value)
            .where(StreamSession.started_at <= started_before)
        )
        with self._session() as session:
            rows = session.execute(statement).all()
        return [
            PolledSession(
                session_id=record.id,
                job_id=record.job_id,
                page_id=page_id,
                live_video_id=record.live_video_id,
                vod_video_id=record.vod_video_id,
                started_at=record.started_at,
                comment_posted=bool(record.comment_posted),
                api_fail_count=record.api_fail_count or 0,
                first_comment=first_comment,
            )
            for record, page_id, first_comment in rows
        ]

    def increment_api_failures(self, session_id: str) -> int:
        with self._session() as session:
            session.execute(
                update(StreamSession)
                .where(StreamSession.id == session_id)
                .values(api_fail_count=func.coalesce(StreamSession.api_fail_count, 0) + 1)
            )
            return session.scalar(select(StreamSession.api_fail_count).where(StreamSession.id == session_id)) or 0

    def reset_api_failures(self, session_id: str) -> None:
        with self._session() as session:
            session.execute(update(StreamSession).where(StreamSession.id == session_id).values(api_fail_count=0))

    def bump_peak_viewers(self, session_id: str, viewers: int) -> None:
        with self._session() as session:
            session.execute(
                update(StreamSession)
                .where(StreamSession.id == session_id)
                .where(func.coalesce(StreamSession.peak_viewers, 0) < viewers)
                .values(peak_viewers=viewers)
            )

    def mark_comment_posted(self, session_id: str) -> bool:
        """Latch ``comment_posted``; False when it was already set."""
        with self._session() as session:
            result = session.execute(
                update(StreamSession)
                .where(StreamSession.id == session_id, StreamSession.comment_posted.is_(False))
                .values(comment_posted=True)
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------ resets

    def reset(self, scope: str) -> None:
        """Delete every row of the tables in ``scope`` atomically."""
        try:
            tables = RESET_SCOPES[scope]
        except KeyError:
            raise ValueError(f"Unknown reset scope: {scope}") from None
        with self._session() as session:
            for table in tables:
                session.execute(delete(table))
        logger.info("Reset %s (%s)", scope, ", ".join(table.__tablename__ for table in tables))

    def stats(self) -> Dict[str, int]:
        with self._session() as session:
            return {
                "video_count": session.scalar(select(func.count()).select_from(Video)) or 0,
                "page_count": session.scalar(select(func.count()).select_from(Page)) or 0,
                "profile_count": session.scalar(select(func.count()).select_from(EditingProfileRecord)) or 0,
                "stream_count": session.scalar(select(func.count()).select_from(StreamJob)) or 0,
                "active_streams": session.scalar(
                    select(func.count()).select_from(StreamJob).where(StreamJob.status == JobStatus.LIVE.value)
                )
                or 0,
            }
