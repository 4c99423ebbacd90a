"""
Job store schema.

Content library, destination pages, editing profiles, brand kits, the stream
queue (jobs), broadcast sessions and key/value settings.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .models import JobStatus, LoopMode, utcnow


class Base(DeclarativeBase):
    pass


class Video(Base):
    __tablename__ = "videos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Page(Base):
    """A destination page and its encrypted access token."""

    __tablename__ = "pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_nonce: Mapped[str] = mapped_column(String(64), nullable=False)
    access_token_tag: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fan_count: Mapped[int] = mapped_column(Integer, default=0)
    followers_count: Mapped[int] = mapped_column(Integer, default=0)
    created_time: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    picture_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    insights_available: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)


class EditingProfileRecord(Base):
    __tablename__ = "editing_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class BrandKit(Base):
    """Reusable logo placement and colours; ``colors`` is a JSON object."""

    __tablename__ = "brand_kits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    logo_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logo_position: Mapped[str] = mapped_column(String(2), default="BR", nullable=False)
    logo_opacity: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    logo_scale: Mapped[float] = mapped_column(Float, default=0.15, nullable=False)
    colors: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def color_map(self) -> dict:
        if not self.colors:
            return {}
        try:
            colors = json.loads(self.colors)
        except json.JSONDecodeError:
            return {}
        return colors if isinstance(colors, dict) else {}


class StreamJob(Base):
    """A queued stream assignment; ``playlist`` holds a JSON list of video ids."""

    __tablename__ = "stream_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    page_id: Mapped[str] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    video_id: Mapped[str] = mapped_column(ForeignKey("videos.id", ondelete="CASCADE"), nullable=False)
    editing_profile_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("editing_profiles.id", ondelete="SET NULL"), nullable=True
    )
    title_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    first_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.QUEUED.value, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    loop: Mapped[int] = mapped_column(Integer, default=LoopMode.LOOP_ALL.value, nullable=False)
    playlist: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recovery_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def playlist_ids(self) -> list[str]:
        if not self.playlist:
            return []
        try:
            items = json.loads(self.playlist)
        except json.JSONDecodeError:
            return []
        return [str(item) for item in items] if isinstance(items, list) else []

    @property
    def loop_mode(self) -> LoopMode:
        try:
            return LoopMode(self.loop)
        except ValueError:
            return LoopMode.OFF


class StreamSession(Base):
    """One remote broadcast object, reused across playlist advances and recoveries."""

    __tablename__ = "stream_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("stream_queue.id", ondelete="CASCADE"), nullable=False)
    live_video_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    vod_video_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stream_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    peak_viewers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bitrate: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    fps: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_video_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_posted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    api_fail_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
