"""Facebook Graph API client wrapper."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .config import GraphConfig
from .models import BroadcastTarget, LiveVideoStatus, PageToken

logger = logging.getLogger(__name__)

PAGE_DETAIL_FIELDS = "id,name,fan_count,followers_count,created_time,verification_status,picture.type(large)"
PAGE_DETAIL_FALLBACK_FIELDS = "id,name,fan_count,created_time,verification_status,picture.type(large)"

EXPIRED_SESSION_MARKER = "Session has expired"
INVALID_TOKEN_MARKER = "Error validating access token"


class ErrorCategory(str, Enum):
    EXPIRED_SESSION = "expired_session"
    INVALID_TOKEN = "invalid_token"
    VALIDATION = "validation"
    PERMISSION = "permission"
    OTHER = "other"


class FacebookAPIError(Exception):
    """A non-2xx response from the Graph API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.payload = payload or {}

    @classmethod
    def from_response(cls, response: requests.Response) -> "FacebookAPIError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return cls(f"HTTP {response.status_code}: {response.text[:200]}", status_code=response.status_code)
        return cls(
            str(error.get("message", "")),
            status_code=response.status_code,
            code=error.get("code"),
            subcode=error.get("error_subcode"),
            payload=body,
        )


class FacebookClient:
    """Thin request/response wrapper around the Graph API endpoints we use."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        config: Optional[GraphConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.config = config or GraphConfig()
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.config.root}/{path.lstrip('/')}"
        logger.debug("Graph API %s %s", method, url)
        response = self.session.request(method, url, params=params, data=data, timeout=self.config.timeout)
        if not response.ok:
            error = FacebookAPIError.from_response(response)
            logger.debug("Graph API %s %s failed: %s", method, url, error)
            raise error
        return response.json()

    def exchange_for_long_lived_token(self, short_token: str) -> Dict[str, Any]:
        params = {
            "grant_type": "fb_exchange_token",
            "client_id": self.app_id,
            "client_secret": self.app_secret,
            "fb_exchange_token": short_token,
        }
        result = self._request("GET", "oauth/access_token", params=params)
        logger.info("Exchanged user token (expires in %s days)", round(result.get("expires_in", 0) / 86400))
        return result

    def get_user_id(self, access_token: str) -> str:
        return self._request("GET", "me", params={"access_token": access_token})["id"]

    def get_pages(self, user_id: str, access_token: str) -> List[PageToken]:
        response = self._request("GET", f"{user_id}/accounts", params={"access_token": access_token, "limit": 100})
        pages = [
            PageToken(id=item["id"], name=item.get("name", ""), access_token=item["access_token"], category=item.get("category"))
            for item in response.get("data", [])
        ]
        logger.info("Found %d pages for account %s", len(pages), user_id)
        return pages

    def sync_page_tokens(self, user_access_token: str) -> List[PageToken]:
        """Fetch fresh tokens for every page the account manages."""
        user_id = self.get_user_id(user_access_token)
        return self.get_pages(user_id, user_access_token)

    def get_page_details(self, page_id: str, page_token: str) -> Dict[str, Any]:
        try:
            return self._request("GET", page_id, params={"fields": PAGE_DETAIL_FIELDS, "access_token": page_token})
        except FacebookAPIError as exc:
            if "followers_count" not in exc.message:
                raise
            logger.info("Retrying page details without followers_count for %s", page_id)
            return self._request("GET", page_id, params={"fields": PAGE_DETAIL_FALLBACK_FIELDS, "access_token": page_token})

    def check_insights(self, page_id: str, page_token: str) -> bool:
        params = {"metric": "page_impressions", "period": "day", "access_token": page_token}
        try:
            response = self._request("GET", f"{page_id}/insights", params=params)
        except (FacebookAPIError, requests.RequestException) as exc:
            logger.info("Insights check failed for %s: %s", page_id, exc)
            return False
        return bool(response.get("data"))

    def create_live_video(self, page_id: str, page_token: str, title: str, description: str) -> BroadcastTarget:
        data = {
            "title": title,
            "description": description,
            "status": "LIVE_NOW",
            "fields": "id,secure_stream_url,stream_url,video",
            "access_token": page_token,
        }
        response = self._request("POST", f"{page_id}/live_videos", data=data)
        vod_video_id = (response.get("video") or {}).get("id")
        stream_url = response.get("secure_stream_url") or response.get("stream_url")
        if not stream_url:
            raise FacebookAPIError("Live video was created without an ingest URL", payload=response)
        logger.info("Created live video %s (vod %s) on page %s", response["id"], vod_video_id, page_id)
        return BroadcastTarget(live_video_id=response["id"], stream_url=stream_url, vod_video_id=vod_video_id)

    def update_live_video(self, live_video_id: str, page_token: str, title: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"access_token": page_token}
        if title is not None:
            data["title"] = title
        if description is not None:
            data["description"] = description
        response = self._request("POST", live_video_id, data=data)
        logger.info("Updated live video %s", live_video_id)
        return response

    def get_live_video_state(self, live_video_id: str, access_token: str) -> LiveVideoStatus:
        response = self._request("GET", live_video_id, params={"fields": "live_views,status", "access_token": access_token})
        return LiveVideoStatus(status=response.get("status"), live_views=int(response.get("live_views") or 0))

    def post_comment(self, video_id: str, page_token: str, message: str) -> str:
        logger.info("Posting comment on %s: %s...", video_id, message[:20])
        response = self._request("POST", f"{video_id}/comments", data={"message": message, "access_token": page_token})
        return response["id"]

    @staticmethod
    def classify_error(exc: BaseException) -> ErrorCategory:
        if not isinstance(exc, FacebookAPIError):
            return ErrorCategory.OTHER
        if EXPIRED_SESSION_MARKER in exc.message:
            return ErrorCategory.EXPIRED_SESSION
        if INVALID_TOKEN_MARKER in exc.message:
            return ErrorCategory.INVALID_TOKEN
        if exc.code == 100:
            return ErrorCategory.VALIDATION
        if exc.code == 200:
            return ErrorCategory.PERMISSION
        return ErrorCategory.OTHER

    @staticmethod
    def is_token_error(exc: BaseException) -> bool:
        return FacebookClient.classify_error(exc) in (ErrorCategory.EXPIRED_SESSION, ErrorCategory.INVALID_TOKEN)

    @staticmethod
    def extract_error(exc: BaseException) -> str:
        """Human-readable message for an API failure."""
        category = FacebookClient.classify_error(exc)
        if category is ErrorCategory.EXPIRED_SESSION:
            return "Your Facebook session has expired. Please provide a new User Access Token."
        if category is ErrorCategory.INVALID_TOKEN:
            return "Invalid Facebook access token. Please check your credentials."
        if isinstance(exc, FacebookAPIError):
            if category is ErrorCategory.VALIDATION:
                return f"Facebook Validation Error: {exc.message}"
            if category is ErrorCategory.PERMISSION:
                return "Facebook Permission Error: Ensure your token has 'publish_video' and 'pages_manage_posts' permissions."
            if exc.code is not None:
                return f"Facebook Error [{exc.code}]: {exc.message}"
            return exc.message
        return str(exc) or "An unknown Facebook error occurred."
