"""OAuth access tokens for Google service accounts."""

import asyncio
import json
import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
ANALYTICS_READONLY_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"


class ServiceAccountToken:
    """Refreshes and caches a bearer token from a service-account key."""

    def __init__(
        self,
        scopes: list[str],
        key_path: str | Path | None = None,
        key_content: str | None = None,
    ):
        if not key_path and not key_content:
            raise ValueError("A service-account key path or key content is required")
        self.scopes = scopes
        self.key_path = Path(key_path) if key_path else None
        self.key_content = key_content
        self._credentials: service_account.Credentials | None = None

    def _load(self) -> service_account.Credentials:
        if self._credentials is None:
            raw = self.key_content if self.key_content else self.key_path.read_text()
            self._credentials = service_account.Credentials.from_service_account_info(
                json.loads(raw), scopes=self.scopes
            )
        return self._credentials

    async def get(self) -> str:
        credentials = self._load()
        if not credentials.valid:
            logger.debug("Refreshing service-account token for %s", ", ".join(self.scopes))
            await asyncio.to_thread(credentials.refresh, Request())
        return credentials.token
