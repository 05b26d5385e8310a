"""Google Play Developer API reader and release-track actions."""

import logging
from dataclasses import dataclass, field

from release_dashboard.integrations.http import ApiClient, IntegrationError

logger = logging.getLogger(__name__)

PLAY_BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"
MAX_NOTES_LENGTH = 500


class GooglePlayError(IntegrationError):
    service = "Google Play"


@dataclass
class PlayRelease:
    status: str | None
    version_name: str | None
    version_codes: list[int] = field(default_factory=list)
    user_fraction: float | None = None
    country_targeting: list[str] | None = None


@dataclass
class PlayStoreInfo:
    package_name: str
    internal: PlayRelease | None = None
    alpha: PlayRelease | None = None
    beta: PlayRelease | None = None
    production: PlayRelease | None = None
    rollout: PlayRelease | None = None
    tracks: dict[str, PlayRelease] = field(default_factory=dict)


def _release(raw: dict) -> PlayRelease:
    targeting = raw.get("countryTargeting") or {}
    return PlayRelease(
        status=raw.get("status"),
        version_name=raw.get("name"),
        version_codes=[int(code) for code in raw.get("versionCodes") or []],
        user_fraction=raw.get("userFraction"),
        country_targeting=targeting.get("countries") or None,
    )


def _latest(releases: list[dict]) -> dict | None:
    return next((r for r in releases if r.get("status") == "completed"), releases[0] if releases else None)


def parse_tracks(package_name: str, data: dict) -> PlayStoreInfo:
    """Shape an ``edits.tracks.list`` response into a PlayStoreInfo."""
    info = PlayStoreInfo(package_name=package_name)
    for track in data.get("tracks") or []:
        releases = track.get("releases") or []
        name = track.get("track")

        if name == "production":
            staged = next(
                (r for r in releases if r.get("status") == "inProgress" and (r.get("userFraction") or r.get("countryTargeting"))),
                None,
            )
            if staged is None:
                staged = next((r for r in releases if r.get("status") == "halted"), None)
            if staged is not None:
                info.rollout = _release(staged)

        latest = _latest(releases)
        if latest is not None:
            info.tracks[name] = _release(latest)

    info.internal = info.tracks.get("internal")
    info.alpha = info.tracks.get("alpha") or info.tracks.get("closedTesting")
    info.beta = info.tracks.get("beta") or info.tracks.get("openTesting")
    info.production = info.tracks.get("production")
    return info


def truncate_notes(text: str, limit: int = MAX_NOTES_LENGTH) -> str:
    """Cut release notes to the store limit, preferring a word boundary."""
    if len(text) <= limit:
        return text
    cut = text[: limit - 3]
    space = cut.rfind(" ")
    if space > limit - 50:
        cut = cut[:space]
    return cut + "..."


def release_notes_payload(notes: dict[str, str] | str | None) -> list[dict] | None:
    if not notes:
        return None
    if isinstance(notes, str):
        notes = {"en-US": notes}
    return [{"language": lang, "text": truncate_notes(text)} for lang, text in notes.items() if text]


class GooglePlayClient(ApiClient):
    """Reads tracks through throwaway edits and commits track changes."""

    error_class = GooglePlayError

    def __init__(self, token_provider, base_url: str = PLAY_BASE_URL, timeout: float = 30.0, transport=None):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.token_provider = token_provider

    async def _headers(self) -> dict[str, str]:
        token = await self.token_provider.get()
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _insert_edit(self, package_name: str) -> str:
        edit = await self._request("POST", f"/{package_name}/edits")
        return edit["id"]

    async def _delete_edit(self, package_name: str, edit_id: str):
        try:
            await self._send("DELETE", f"/{package_name}/edits/{edit_id}")
        except GooglePlayError as e:
            logger.debug("Failed to delete edit %s for %s: %s", edit_id, package_name, e)

    async def get_app_info(self, package_name: str) -> PlayStoreInfo:
        logger.info("Fetching Android app info: %s", package_name)
        edit_id = await self._insert_edit(package_name)
        try:
            data = await self._request("GET", f"/{package_name}/edits/{edit_id}/tracks")
        finally:
            await self._delete_edit(package_name, edit_id)
        info = parse_tracks(package_name, data)
        logger.debug("Found tracks for %s: %s", package_name, sorted(info.tracks))
        return info

    async def _update_track(self, package_name: str, track: str, build_release) -> dict:
        """Run ``build_release(edit_id)`` inside an edit and commit the result to ``track``."""
        edit_id = await self._insert_edit(package_name)
        try:
            release = await build_release(edit_id)
            await self._request(
                "PUT",
                f"/{package_name}/edits/{edit_id}/tracks/{track}",
                json={"track": track, "releases": [release]},
            )
            await self._request("POST", f"/{package_name}/edits/{edit_id}:commit")
        except GooglePlayError:
            await self._delete_edit(package_name, edit_id)
            raise
        return release

    async def _track_releases(self, package_name: str, edit_id: str, track: str) -> list[dict]:
        data = await self._request("GET", f"/{package_name}/edits/{edit_id}/tracks/{track}")
        return data.get("releases") or []

    async def _source_release(self, package_name: str, edit_id: str, track: str) -> dict:
        latest = _latest(await self._track_releases(package_name, edit_id, track))
        if not latest or not latest.get("versionCodes"):
            raise GooglePlayError(404, f"No version found on {track} track")
        return latest

    async def promote(
        self,
        package_name: str,
        from_track: str,
        to_track: str,
        release_notes: dict[str, str] | str | None = None,
    ) -> dict:
        async def build(edit_id: str) -> dict:
            source = await self._source_release(package_name, edit_id, from_track)
            release = {"versionCodes": source["versionCodes"], "status": "completed", "name": source.get("name")}
            if notes := release_notes_payload(release_notes):
                release["releaseNotes"] = notes
            return release

        release = await self._update_track(package_name, to_track, build)
        logger.info("Promoted %s %s -> %s (%s)", package_name, from_track, to_track, release.get("name"))
        return {
            "success": True,
            "packageName": package_name,
            "fromTrack": from_track,
            "toTrack": to_track,
            "versionCodes": release["versionCodes"],
            "versionName": release.get("name"),
        }

    async def start_rollout(
        self,
        package_name: str,
        from_track: str,
        user_fraction: float,
        release_notes: dict[str, str] | str | None = None,
        country: str | None = None,
    ) -> dict:
        async def build(edit_id: str) -> dict:
            source = await self._source_release(package_name, edit_id, from_track)
            release = {
                "versionCodes": source["versionCodes"],
                "name": source.get("name"),
                "status": "inProgress",
                "userFraction": user_fraction,
            }
            if country:
                release["countryTargeting"] = {"countries": [country], "includeRestOfWorld": False}
            if notes := release_notes_payload(release_notes):
                release["releaseNotes"] = notes
            return release

        release = await self._update_track(package_name, "production", build)
        logger.info("Started rollout of %s at %.0f%%", package_name, user_fraction * 100)
        return {
            "success": True,
            "packageName": package_name,
            "fromTrack": from_track,
            "toTrack": "production",
            "versionCodes": release["versionCodes"],
            "versionName": release.get("name"),
            "userFraction": user_fraction,
            "countryCode": country,
        }

    async def update_rollout(self, package_name: str, user_fraction: float) -> dict:
        async def build(edit_id: str) -> dict:
            releases = await self._track_releases(package_name, edit_id, "production")
            current = next((r for r in releases if r.get("status") in ("inProgress", "halted")), None)
            if current is None:
                raise GooglePlayError(404, "No active rollout found on production track")
            release = {
                "versionCodes": current.get("versionCodes"),
                "name": current.get("name"),
                "releaseNotes": current.get("releaseNotes"),
            }
            if user_fraction >= 1.0:
                release["status"] = "completed"
            else:
                release["status"] = "inProgress"
                release["userFraction"] = user_fraction
                if current.get("countryTargeting"):
                    release["countryTargeting"] = current["countryTargeting"]
            return release

        release = await self._update_track(package_name, "production", build)
        return {
            "success": True,
            "packageName": package_name,
            "versionCodes": release["versionCodes"],
            "versionName": release.get("name"),
            "userFraction": user_fraction,
            "status": release["status"],
        }

    async def halt_rollout(self, package_name: str) -> dict:
        async def build(edit_id: str) -> dict:
            releases = await self._track_releases(package_name, edit_id, "production")
            current = next((r for r in releases if r.get("status") == "inProgress"), None)
            if current is None:
                raise GooglePlayError(404, "No active rollout found to halt")
            release = {
                "versionCodes": current.get("versionCodes"),
                "name": current.get("name"),
                "status": "halted",
                "userFraction": current.get("userFraction"),
                "releaseNotes": current.get("releaseNotes"),
            }
            if current.get("countryTargeting"):
                release["countryTargeting"] = current["countryTargeting"]
            return release

        release = await self._update_track(package_name, "production", build)
        logger.info("Halted rollout of %s (%s)", package_name, release.get("name"))
        return {
            "success": True,
            "packageName": package_name,
            "versionCodes": release["versionCodes"],
            "versionName": release.get("name"),
            "status": "halted",
        }
