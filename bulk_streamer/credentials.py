"""Page token resolution and automatic token recovery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import requests

from .config import GraphConfig
from .errors import ConfigurationError, NotFoundError
from .facebook_client import FacebookAPIError, FacebookClient
from .store import JobStore
from .vault import CredentialVault

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[..., FacebookClient]


class CredentialManager:
    """Runs Graph calls with a page token, refreshing every page's token once on a token failure."""

    def __init__(
        self,
        store: JobStore,
        vault: CredentialVault,
        client_factory: ClientFactory = FacebookClient,
        graph: Optional[GraphConfig] = None,
    ):
        self.store = store
        self.vault = vault
        self.client_factory = client_factory
        self.graph = graph or GraphConfig()

    def app_credentials(self) -> Tuple[str, str]:
        credentials = self.store.app_credentials()
        if credentials is None:
            raise ConfigurationError("Facebook App credentials not configured")
        return credentials

    def client(self, credentials: Optional[Tuple[str, str]] = None) -> FacebookClient:
        app_id, app_secret = credentials or self.app_credentials()
        return self.client_factory(app_id, app_secret, self.graph)

    def page_token(self, page_id: str) -> str:
        page = self.store.get_page(page_id)
        if page is None:
            raise ConfigurationError(f"Page {page_id} not found")
        return self.vault.decrypt_secret(self.store.page_secret(page))

    def user_token(self) -> Optional[str]:
        secret = self.store.user_token_secret()
        if secret is None:
            return None
        return self.vault.decrypt_secret(secret)

    async def call(self, page_id: str, action: Callable[[FacebookClient, str], T]) -> T:
        """Run ``action(client, page_token)`` off the event loop.

        On an expired or invalid token, every page token is refreshed from the
        stored user token and the action is retried exactly once. If recovery is
        impossible the original error propagates.
        """
        client = self.client()
        token = self.page_token(page_id)
        try:
            return await asyncio.to_thread(action, client, token)
        except FacebookAPIError as exc:
            if not FacebookClient.is_token_error(exc):
                raise
            logger.warning("Token error for page %s, attempting automatic recovery: %s", page_id, exc.message)
            try:
                fresh_token = await asyncio.to_thread(self._refresh_page_tokens, client, page_id)
            except (FacebookAPIError, requests.RequestException, ValueError) as recovery_exc:
                logger.error("Automatic token recovery failed for page %s: %s", page_id, recovery_exc)
                raise exc from recovery_exc
            if fresh_token is None:
                raise
            logger.info("Tokens refreshed, retrying request for page %s", page_id)
            try:
                return await asyncio.to_thread(action, client, fresh_token)
            except (FacebookAPIError, requests.RequestException) as retry_exc:
                logger.error("Retry after token recovery failed for page %s: %s", page_id, retry_exc)
                raise exc from retry_exc

    def _refresh_page_tokens(self, client: FacebookClient, page_id: str) -> Optional[str]:
        user_token = self.user_token()
        if not user_token:
            logger.error("No user token stored, cannot recover page tokens")
            return None

        fresh = client.sync_page_tokens(user_token)
        self.store.replace_page_tokens({page.id: self.vault.encrypt(page.access_token) for page in fresh})
        logger.info("Refreshed tokens for %d pages", len(fresh))

        for page in fresh:
            if page.id == page_id:
                return page.access_token
        logger.error("Page %s is no longer returned for this account", page_id)
        return None

    # ------------------------------------------------------------------ account

    def save_account(self, app_id: str, app_secret: str, user_token: str) -> bool:
        """Store app credentials and a (preferably long-lived) user token.

        Returns True when the token was exchanged for a long-lived one.
        """
        client = self.client((app_id, app_secret))
        exchanged = False
        token = user_token
        try:
            token = client.exchange_for_long_lived_token(user_token)["access_token"]
            exchanged = True
        except (FacebookAPIError, requests.RequestException, KeyError) as exc:
            logger.warning("Could not exchange user token, storing it as given: %s", exc)
        self.store.save_account(app_id, app_secret, self.vault.encrypt(token))
        return exchanged

    def sync_pages(self) -> List[Dict[str, Any]]:
        """Import every page the stored account manages, with its public details."""
        client = self.client()
        user_token = self.user_token()
        if not user_token:
            raise ConfigurationError("User access token not configured")

        try:
            user_id = client.get_user_id(user_token)
        except FacebookAPIError as exc:
            if not FacebookClient.is_token_error(exc):
                raise
            logger.info("User token rejected, exchanging for a long-lived token")
            user_token = client.exchange_for_long_lived_token(user_token)["access_token"]
            self.store.save_account(client.app_id, client.app_secret, self.vault.encrypt(user_token))
            user_id = client.get_user_id(user_token)

        synced = []
        for page in client.get_pages(user_id, user_token):
            details = self._page_details(client, page.id, page.access_token)
            self.store.upsert_page(
                page.id,
                page.name,
                self.vault.encrypt(page.access_token),
                category=page.category,
                **details,
            )
            synced.append({"id": page.id, "name": page.name, "category": page.category, **details})
        logger.info("Synced %d pages", len(synced))
        return synced

    def recheck_page(self, page_id: str) -> Dict[str, Any]:
        client = self.client()
        token = self.page_token(page_id)
        details = self._page_details(client, page_id, token)
        details["insights_available"] = client.check_insights(page_id, token)
        if not self.store.update_page_details(page_id, **details):
            raise NotFoundError(f"Page {page_id} not found")
        return {"id": page_id, **details}

    @staticmethod
    def _page_details(client: FacebookClient, page_id: str, token: str) -> Dict[str, Any]:
        try:
            details = client.get_page_details(page_id, token)
        except (FacebookAPIError, requests.RequestException) as exc:
            logger.warning("Could not fetch details for page %s: %s", page_id, exc)
            return {"fan_count": 0, "followers_count": 0, "created_time": None, "picture_url": None}
        picture = (details.get("picture") or {}).get("data") or {}
        return {
            "fan_count": int(details.get("fan_count") or 0),
            "followers_count": int(details.get("followers_count") or 0),
            "created_time": details.get("created_time"),
            "picture_url": picture.get("url"),
        }
