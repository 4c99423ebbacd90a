"""Configuration helpers for the bulk streamer."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


@dataclass
class OrchestratorConfig:
    max_concurrent: int = 5
    queue_interval: float = 5.0
    viewer_poll_interval: float = 30.0
    max_recovery_attempts: int = 3
    max_api_failures: int = 5
    comment_delay: float = 15.0
    ffmpeg_path: str = "ffmpeg"


@dataclass
class GraphConfig:
    api_version: str = "v24.0"
    base_url: str = "https://graph.facebook.com"
    timeout: float = 30.0

    @property
    def root(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_version}"


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None


@dataclass
class StreamerConfig:
    project_name: str = "Bulk Streamer"
    database_url: str = "sqlite:///bulk_streamer.db"
    key_path: str = ".key"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)


def load_config() -> StreamerConfig:
    """Load configuration from environment variables."""
    orchestrator = OrchestratorConfig(
        max_concurrent=int(os.getenv("MAX_CONCURRENT_STREAMS", "5")),
        queue_interval=float(os.getenv("QUEUE_INTERVAL", "5")),
        viewer_poll_interval=float(os.getenv("VIEWER_POLL_INTERVAL", "30")),
        max_recovery_attempts=int(os.getenv("MAX_RECOVERY_ATTEMPTS", "3")),
        max_api_failures=int(os.getenv("MAX_API_FAILURES", "5")),
        comment_delay=float(os.getenv("COMMENT_DELAY", "15")),
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
    )

    graph = GraphConfig(
        api_version=os.getenv("GRAPH_API_VERSION", "v24.0"),
        base_url=os.getenv("GRAPH_API_BASE_URL", "https://graph.facebook.com"),
        timeout=float(os.getenv("GRAPH_API_TIMEOUT", "30")),
    )

    notifier = NotifierConfig(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("NOTIFY_EMAIL_FROM"),
        email_to=os.getenv("NOTIFY_EMAIL_TO"),
    )

    return StreamerConfig(
        project_name=os.getenv("PROJECT_NAME", "Bulk Streamer"),
        database_url=os.getenv("BULK_STREAMER_DATABASE_URL", "sqlite:///bulk_streamer.db"),
        key_path=os.getenv("BULK_STREAMER_KEY_PATH", ".key"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE"),
        orchestrator=orchestrator,
        graph=graph,
        notifier=notifier,
    )


def configure_logging(config: StreamerConfig) -> None:
    """Install the root handlers once; safe to call again."""
    root = logging.getLogger()
    root.setLevel(config.log_level.upper())
    if getattr(root, "_bulk_streamer_configured", False):
        return

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root._bulk_streamer_configured = True  # type: ignore[attr-defined]
