"""Wire the configured readers into one bundle for the orchestrator."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from release_dashboard.config import Config
from release_dashboard.integrations import plastic
from release_dashboard.integrations.analytics import AnalyticsClient
from release_dashboard.integrations.app_store import AppStoreClient, AppStoreError, load_private_key
from release_dashboard.integrations.google_play import GooglePlayClient
from release_dashboard.integrations.google_token import (
    ANALYTICS_READONLY_SCOPE,
    ANDROID_PUBLISHER_SCOPE,
    ServiceAccountToken,
)
from release_dashboard.integrations.jenkins import JenkinsClient
from release_dashboard.state.models import CommitInfo

logger = logging.getLogger(__name__)

VcsReader = Callable[[str, str, int], Awaitable[list[CommitInfo]]]


@dataclass
class Sources:
    """External readers; any of them may be missing when not configured."""

    jenkins: JenkinsClient | None = None
    app_store: AppStoreClient | None = None
    google_play: GooglePlayClient | None = None
    analytics: AnalyticsClient | None = None
    vcs: VcsReader | None = None

    async def close(self):
        for client in (self.jenkins, self.app_store, self.google_play, self.analytics):
            if client is not None:
                await client.close()


def build_sources(config: Config) -> Sources:
    sources = Sources()

    if config.jenkins_base_url:
        sources.jenkins = JenkinsClient(
            config.jenkins_base_url,
            username=config.jenkins_username,
            api_token=config.jenkins_api_token,
            history_days=config.branch_history_days,
        )

    if config.asc_key_content or config.asc_key_path:
        try:
            key, key_id, issuer_id = load_private_key(
                config.asc_key_path, config.asc_key_content, config.asc_key_id, config.asc_issuer_id
            )
            sources.app_store = AppStoreClient(key, key_id, issuer_id, timeout=config.source_timeout)
        except (AppStoreError, OSError, KeyError) as e:
            logger.warning("App Store Connect disabled: %s", e)

    if config.google_play_key_content or config.google_play_key_path:
        token = ServiceAccountToken(
            [ANDROID_PUBLISHER_SCOPE],
            key_path=config.google_play_key_path,
            key_content=config.google_play_key_content,
        )
        sources.google_play = GooglePlayClient(token, timeout=config.source_timeout)

    key_path, key_content = config.analytics_key
    if (key_path or key_content) and any(config.analytics_property(name) for name in config.projects):
        token = ServiceAccountToken([ANALYTICS_READONLY_SCOPE], key_path=key_path, key_content=key_content)
        sources.analytics = AnalyticsClient(token, timeout=config.source_timeout)

    if any(settings.get("plasticRepo") for settings in config.projects.values()):
        sources.vcs = plastic.get_recent_changesets

    enabled = [name for name in ("jenkins", "app_store", "google_play", "analytics", "vcs") if getattr(sources, name)]
    logger.info("Sources enabled: %s", ", ".join(enabled) or "none")
    return sources
