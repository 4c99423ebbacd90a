"""FastAPI application exposing bulk streaming controls."""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import StreamerConfig, configure_logging, load_config
from .errors import ConfigurationError, JobConflictError, NotFoundError
from .facebook_client import FacebookAPIError, FacebookClient
from .models import LoopMode, to_naive_utc
from .notifier import Notifier
from .profile import parse_profile
from .store import RESET_SCOPES, STREAM_RESET_SCOPES, JobStore
from .stream_manager import StreamOrchestrator
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class SettingsPayload(BaseModel):
    app_id: str
    app_secret: str
    user_token: str = Field(..., description="Short- or long-lived user access token.")


class VideoPayload(BaseModel):
    path: str = Field(..., description="Local file path of the content.")
    title: Optional[str] = None
    duration: Optional[int] = None
    resolution: Optional[str] = None


class ProfilePayload(BaseModel):
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class BrandKitPayload(BaseModel):
    name: str
    logo_path: Optional[str] = None
    logo_position: Optional[Literal["TL", "TR", "BL", "BR"]] = None
    logo_opacity: Optional[float] = Field(None, ge=0, le=1)
    logo_scale: Optional[float] = Field(None, gt=0, le=1)
    colors: Optional[Dict[str, str]] = Field(None, description="Named colours such as primary and secondary.")
    id: Optional[str] = None


class StreamsPayload(BaseModel):
    page_ids: List[str] = Field(..., min_length=1)
    video_ids: List[str] = Field(..., min_length=1, description="Several ids make a playlist.")
    editing_profile_id: Optional[str] = None
    title_template: Optional[str] = None
    description_template: Optional[str] = None
    first_comment: Optional[str] = None
    scheduled_time: Optional[dt.datetime] = None
    loop: int = Field(LoopMode.LOOP_ALL.value, ge=0, le=2, description="0=off, 1=loop all, 2=loop one")
    priority: int = 1


class MetadataPayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


def _page_view(page) -> Dict[str, Any]:
    return {
        "id": page.id,
        "name": page.name,
        "category": page.category,
        "fan_count": page.fan_count,
        "followers_count": page.followers_count,
        "created_time": page.created_time,
        "last_checked": page.last_checked,
        "picture_url": page.picture_url,
        "insights_available": page.insights_available,
    }


def _video_view(video) -> Dict[str, Any]:
    return {
        "id": video.id,
        "filename": video.filename,
        "path": video.path,
        "title": video.title,
        "duration": video.duration,
        "resolution": video.resolution,
        "created_at": video.created_at,
    }


def _brand_kit_view(kit) -> Dict[str, Any]:
    return {
        "id": kit.id,
        "name": kit.name,
        "logo_path": kit.logo_path,
        "logo_position": kit.logo_position,
        "logo_opacity": kit.logo_opacity,
        "logo_scale": kit.logo_scale,
        "colors": kit.color_map,
        "created_at": kit.created_at,
    }


def create_app(config: Optional[StreamerConfig] = None) -> FastAPI:
    config = config or load_config()
    configure_logging(config)
    store = JobStore(config.database_url)
    vault = CredentialVault(config.key_path)
    orchestrator = StreamOrchestrator(
        store,
        vault,
        config.orchestrator,
        graph=config.graph,
        notifier=Notifier(config.notifier),
    )
    credentials = orchestrator.credentials
    app = FastAPI(title=config.project_name)
    app.state.store = store
    app.state.orchestrator = orchestrator

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(JobConflictError)
    async def conflict_error(request: Request, exc: JobConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_error(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(FacebookAPIError)
    async def facebook_error(request: Request, exc: FacebookAPIError) -> JSONResponse:
        logger.error("Facebook API error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=502, content={"detail": FacebookClient.extract_error(exc)})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "active_streams": orchestrator.active_count}

    # ---------------------------------------------------------------- account

    @app.post("/settings")
    async def save_settings(payload: SettingsPayload):
        exchanged = await asyncio.to_thread(
            credentials.save_account, payload.app_id, payload.app_secret, payload.user_token
        )
        return {"saved": True, "long_lived": exchanged}

    @app.post("/pages/sync")
    async def sync_pages():
        pages = await asyncio.to_thread(credentials.sync_pages)
        return {"count": len(pages), "pages": pages}

    @app.get("/pages")
    async def list_pages():
        return [_page_view(page) for page in store.list_pages()]

    @app.post("/pages/{page_id}/recheck")
    async def recheck_page(page_id: str):
        if store.get_page(page_id) is None:
            raise HTTPException(status_code=404, detail=f"Page {page_id} not found")
        return await asyncio.to_thread(credentials.recheck_page, page_id)

    # ---------------------------------------------------------------- content

    @app.post("/videos")
    async def add_video(payload: VideoPayload):
        video = store.add_video(payload.path, payload.title, payload.duration, payload.resolution)
        return _video_view(video)

    @app.get("/videos")
    async def list_videos():
        return [_video_view(video) for video in store.list_videos()]

    @app.delete("/videos/{video_id}")
    async def delete_video(video_id: str):
        if not store.delete_video(video_id):
            raise HTTPException(status_code=404, detail=f"Video {video_id} not found")
        return {"deleted": True}

    @app.get("/profiles")
    async def list_profiles():
        return [
            {"id": record.id, "name": record.name, "data": dataclasses.asdict(parse_profile(record.data)), "created_at": record.created_at}
            for record in store.list_profiles()
        ]

    @app.post("/profiles")
    async def save_profile(payload: ProfilePayload):
        record = store.save_profile(payload.name, payload.data, payload.id)
        return {"id": record.id, "name": record.name}

    @app.delete("/profiles/{profile_id}")
    async def delete_profile(profile_id: str):
        if not store.delete_profile(profile_id):
            raise HTTPException(status_code=404, detail=f"Profile {profile_id} not found")
        return {"deleted": True}

    @app.get("/brand-kits")
    async def list_brand_kits():
        return [_brand_kit_view(kit) for kit in store.list_brand_kits()]

    @app.post("/brand-kits")
    async def save_brand_kit(payload: BrandKitPayload):
        kit = store.save_brand_kit(
            payload.name,
            logo_path=payload.logo_path,
            logo_position=payload.logo_position,
            logo_opacity=payload.logo_opacity,
            logo_scale=payload.logo_scale,
            colors=payload.colors,
            kit_id=payload.id,
        )
        return {"id": kit.id}

    @app.delete("/brand-kits/{kit_id}")
    async def delete_brand_kit(kit_id: str):
        if not store.delete_brand_kit(kit_id):
            raise HTTPException(status_code=404, detail=f"Brand kit {kit_id} not found")
        return {"deleted": True}

    # ---------------------------------------------------------------- streams

    @app.post("/streams")
    async def create_streams(payload: StreamsPayload):
        missing = [page_id for page_id in payload.page_ids if store.get_page(page_id) is None]
        missing += [video_id for video_id in payload.video_ids if store.get_video(video_id) is None]
        if missing:
            raise HTTPException(status_code=400, detail=f"Unknown page or video ids: {', '.join(missing)}")
        job_ids = orchestrator.create_jobs(
            payload.page_ids,
            payload.video_ids,
            editing_profile_id=payload.editing_profile_id,
            title_template=payload.title_template,
            description_template=payload.description_template,
            first_comment=payload.first_comment,
            scheduled_time=to_naive_utc(payload.scheduled_time),
            loop=LoopMode(payload.loop),
            priority=payload.priority,
        )
        return {"job_ids": job_ids}

    @app.get("/streams")
    async def list_streams(limit: int = 50):
        return [dataclasses.asdict(summary) for summary in orchestrator.list_jobs(limit)]

    @app.post("/streams/stop-all")
    async def stop_all_streams():
        await orchestrator.stop_all_streams()
        return {"status": "stopping"}

    @app.post("/streams/{job_id}/stop")
    async def stop_stream(job_id: str):
        if store.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        await orchestrator.stop_stream(job_id)
        return {"status": "stopping"}

    @app.post("/streams/{job_id}/restart")
    async def restart_stream(job_id: str):
        orchestrator.restart_job(job_id)
        return {"status": "queued"}

    @app.patch("/streams/{job_id}/metadata")
    async def update_metadata(job_id: str, payload: MetadataPayload):
        if not payload.title and not payload.description:
            raise HTTPException(status_code=400, detail="Nothing to update")
        await orchestrator.update_metadata(job_id, payload.title, payload.description)
        return {"updated": True}

    # ----------------------------------------------------------------- system

    @app.post("/system/reset/{scope}")
    async def reset(scope: str):
        if scope not in RESET_SCOPES:
            raise HTTPException(status_code=404, detail=f"Unknown reset scope: {scope}")
        if scope in STREAM_RESET_SCOPES:
            await orchestrator.stop_all_streams()
        store.reset(scope)
        return {"reset": scope}

    @app.get("/system/stats")
    async def stats():
        return {**store.stats(), "running_processes": len(orchestrator.active_streams)}

    @app.on_event("startup")
    async def startup_event() -> None:
        orchestrator.start()
        logger.info("Bulk streamer started.")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await orchestrator.shutdown()
        logger.info("Bulk streamer stopped.")

    return app


app = create_app()
