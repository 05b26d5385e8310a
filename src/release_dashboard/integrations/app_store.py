"""App Store Connect API reader and TestFlight promotion."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

import jwt

from release_dashboard.integrations.http import ApiClient, IntegrationError

logger = logging.getLogger(__name__)

ASC_BASE_URL = "https://api.appstoreconnect.apple.com"
TOKEN_LIFETIME = 20 * 60
TOKEN_REFRESH_MARGIN = 120
MAX_RETRIES = 3
MAX_BACKOFF = 60.0

LIVE_STATE = "READY_FOR_SALE"
PENDING_STATES = (
    "WAITING_FOR_REVIEW",
    "IN_REVIEW",
    "PENDING_DEVELOPER_RELEASE",
    "PREPARE_FOR_SUBMISSION",
)
# Share of users reached on each day of a phased release
PHASED_RELEASE_PERCENT = [1, 2, 5, 10, 20, 50, 100]


class AppStoreError(IntegrationError):
    service = "App Store Connect"


@dataclass
class StoreVersion:
    version: str | None
    build: str | None = None
    build_id: str | None = None
    state: str | None = None
    created_date: str | None = None


@dataclass
class PhasedRelease:
    version: str | None
    build: str | None
    build_id: str | None
    state: str
    day: int
    user_fraction: float
    created_date: str | None = None


@dataclass
class BetaBuild:
    version_string: str | None
    build: str | None
    build_id: str | None
    uploaded_date: str | None = None
    processing_state: str | None = None


@dataclass
class AppStoreInfo:
    bundle_id: str
    app_id: str | None = None
    name: str | None = None
    live: StoreVersion | None = None
    prev_live: StoreVersion | None = None
    pending: StoreVersion | None = None
    rollout: PhasedRelease | None = None
    testflight: BetaBuild | None = None
    beta_groups: dict[str, BetaBuild] = field(default_factory=dict)
    # build number -> (marketing version, build id)
    build_lookup: dict[str, tuple[str | None, str]] = field(default_factory=dict, repr=False)


def _related_id(resource: dict, name: str) -> str | None:
    data = ((resource.get("relationships") or {}).get(name) or {}).get("data")
    return data.get("id") if data else None


def parse_app_info(bundle_id: str, app: dict, versions: dict, builds: dict) -> AppStoreInfo:
    """Shape the appStoreVersions and builds responses into an AppStoreInfo."""
    version_included = versions.get("included") or []
    build_numbers = {
        item["id"]: item["attributes"].get("version")
        for item in version_included
        if item.get("type") == "builds"
    }
    phased = {
        item["id"]: item["attributes"]
        for item in version_included
        if item.get("type") == "appStoreVersionPhasedReleases"
    }
    pre_release = {
        item["id"]: item["attributes"].get("version")
        for item in builds.get("included") or []
        if item.get("type") == "preReleaseVersions"
    }

    def store_version(resource: dict) -> StoreVersion:
        attrs = resource["attributes"]
        build_id = _related_id(resource, "build")
        return StoreVersion(
            version=attrs.get("versionString"),
            build=build_numbers.get(build_id) if build_id else None,
            build_id=build_id,
            state=attrs.get("appStoreState"),
            created_date=attrs.get("createdDate"),
        )

    def beta_build(resource: dict) -> BetaBuild:
        attrs = resource["attributes"]
        pre_release_id = _related_id(resource, "preReleaseVersion")
        return BetaBuild(
            version_string=pre_release.get(pre_release_id) if pre_release_id else None,
            build=attrs.get("version"),
            build_id=resource["id"],
            uploaded_date=attrs.get("uploadedDate"),
            processing_state=attrs.get("processingState"),
        )

    version_data = versions.get("data") or []
    live = sorted(
        (v for v in version_data if v["attributes"].get("appStoreState") == LIVE_STATE),
        key=lambda v: v["attributes"].get("createdDate") or "",
        reverse=True,
    )
    pending = next((v for v in version_data if v["attributes"].get("appStoreState") in PENDING_STATES), None)

    build_data = builds.get("data") or []
    info = AppStoreInfo(
        bundle_id=bundle_id,
        app_id=app.get("id"),
        name=(app.get("attributes") or {}).get("name"),
        live=store_version(live[0]) if live else None,
        prev_live=store_version(live[1]) if len(live) > 1 else None,
        pending=store_version(pending) if pending else None,
        testflight=beta_build(build_data[0]) if build_data else None,
    )
    for resource in build_data:
        parsed = beta_build(resource)
        if parsed.build is not None:
            info.build_lookup.setdefault(parsed.build, (parsed.version_string, parsed.build_id))

    if live:
        release_id = _related_id(live[0], "appStoreVersionPhasedRelease")
        attrs = phased.get(release_id) if release_id else None
        if attrs and attrs.get("phasedReleaseState") in ("ACTIVE", "PAUSED"):
            day = attrs.get("currentDayNumber") or 0
            percent = PHASED_RELEASE_PERCENT[day] if 0 <= day < len(PHASED_RELEASE_PERCENT) else PHASED_RELEASE_PERCENT[0]
            info.rollout = PhasedRelease(
                version=info.live.version,
                build=info.live.build,
                build_id=info.live.build_id,
                state=attrs["phasedReleaseState"],
                day=day,
                user_fraction=percent / 100,
                created_date=info.live.created_date,
            )
    return info


def load_private_key(
    key_path: str | Path | None,
    key_content: str | None,
    key_id: str | None,
    issuer_id: str | None,
) -> tuple[str, str, str]:
    """Return ``(private_key, key_id, issuer_id)`` from a .p8 key or the legacy JSON key file."""
    if key_content:
        return key_content.replace("\\n", "\n"), key_id or "", issuer_id or ""
    if not key_path:
        raise AppStoreError(0, "App Store Connect key not configured")

    path = Path(key_path)
    if path.suffix == ".p8":
        return path.read_text(), key_id or "", issuer_id or ""

    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise AppStoreError(0, f"Failed to read Apple API key: {e}") from e
    return data["key"].replace("\\n", "\n"), data["key_id"], data["issuer_id"]


class AppStoreClient(ApiClient):
    """App Store Connect reader authenticated with an ES256 token."""

    error_class = AppStoreError

    def __init__(
        self,
        private_key: str,
        key_id: str,
        issuer_id: str,
        base_url: str = ASC_BASE_URL,
        timeout: float = 30.0,
        transport=None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.private_key = private_key
        self.key_id = key_id
        self.issuer_id = issuer_id
        self._token: str | None = None
        self._token_expiry = 0

    def token(self) -> str:
        now = int(time.time())
        if self._token and self._token_expiry > now + TOKEN_REFRESH_MARGIN:
            return self._token

        expiry = now + TOKEN_LIFETIME
        self._token = jwt.encode(
            {"iss": self.issuer_id, "iat": now, "exp": expiry, "aud": "appstoreconnect-v1"},
            self.private_key,
            algorithm="ES256",
            headers={"kid": self.key_id, "typ": "JWT"},
        )
        self._token_expiry = expiry
        logger.debug("Generated new App Store Connect token")
        return self._token

    async def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token()}", "Content-Type": "application/json"}

    async def _send(self, method: str, path: str, **kwargs):
        for attempt in range(MAX_RETRIES + 1):
            try:
                return await super()._send(method, path, **kwargs)
            except AppStoreError as e:
                if e.status_code != 429 or attempt == MAX_RETRIES:
                    raise
                backoff = min(e.retry_after or MAX_BACKOFF, MAX_BACKOFF)
                logger.warning(
                    "App Store Connect rate limited, retrying in %.0fs (%d retries left)",
                    backoff, MAX_RETRIES - attempt,
                )
                await asyncio.sleep(backoff)

    async def _find_app(self, bundle_id: str) -> dict:
        apps = await self._request("GET", "/v1/apps", params={"filter[bundleId]": bundle_id})
        if not apps.get("data"):
            raise AppStoreError(404, f"App not found: {bundle_id}")
        return apps["data"][0]

    async def get_app_info(self, bundle_id: str) -> AppStoreInfo:
        logger.info("Fetching iOS app info: %s", bundle_id)
        app = await self._find_app(bundle_id)
        app_id = app["id"]

        versions, builds = await asyncio.gather(
            self._request(
                "GET",
                f"/v1/apps/{app_id}/appStoreVersions",
                params={"include": "build,appStoreReviewDetail,appStoreVersionPhasedRelease", "limit": 10},
            ),
            self._request(
                "GET",
                "/v1/builds",
                params={
                    "filter[app]": app_id,
                    "sort": "-uploadedDate",
                    "limit": 50,
                    "include": "preReleaseVersion,buildBetaDetail",
                },
            ),
        )
        info = parse_app_info(bundle_id, app, versions, builds)
        info.beta_groups = await self._beta_groups(app_id, info.build_lookup)
        return info

    async def _beta_groups(self, app_id: str, lookup: dict[str, tuple[str | None, str]]) -> dict[str, BetaBuild]:
        groups = await self._request("GET", f"/v1/apps/{app_id}/betaGroups")

        async def latest(group: dict) -> tuple[str, BetaBuild | None]:
            name = group["attributes"]["name"]
            try:
                response = await self._request("GET", f"/v1/betaGroups/{group['id']}/builds", params={"limit": 1})
            except AppStoreError as e:
                logger.warning("Failed to get builds for beta group %s: %s", name, e)
                return name, None
            data = response.get("data") or []
            if not data:
                return name, None
            attrs = data[0]["attributes"]
            number = attrs.get("version")
            version_string, build_id = lookup.get(number, (None, data[0]["id"]))
            return name, BetaBuild(
                version_string=version_string,
                build=number,
                build_id=build_id,
                uploaded_date=attrs.get("uploadedDate"),
                processing_state=attrs.get("processingState"),
            )

        results = await asyncio.gather(*(latest(g) for g in groups.get("data") or []))
        return {name: build for name, build in results if build is not None}

    async def promote_build(self, bundle_id: str, build_id: str, group_name: str) -> dict:
        """Add a build to a beta group, submitting for beta review when the group is external."""
        app = await self._find_app(bundle_id)
        groups = await self._request("GET", f"/v1/apps/{app['id']}/betaGroups")
        group = next(
            (g for g in groups.get("data") or [] if g["attributes"]["name"].lower() == group_name.lower()),
            None,
        )
        if group is None:
            raise AppStoreError(404, f"Beta group not found: {group_name}")

        external = group["attributes"].get("isInternalGroup") is False
        if external:
            await self._submit_for_beta_review(build_id)

        try:
            await self._request(
                "POST",
                f"/v1/betaGroups/{group['id']}/relationships/builds",
                json={"data": [{"type": "builds", "id": build_id}]},
            )
        except AppStoreError as e:
            if e.status_code != 409:
                raise
            logger.info("Build %s already in beta group %s", build_id, group_name)

        logger.info("Promoted iOS build %s to %s", build_id, group_name)
        return {
            "success": True,
            "bundleId": bundle_id,
            "buildId": build_id,
            "betaGroupName": group_name,
            "submittedForReview": external,
        }

    async def _submit_for_beta_review(self, build_id: str):
        build = await self._request("GET", f"/v1/builds/{build_id}", params={"include": "betaAppReviewSubmission"})
        submission = next(
            (i for i in build.get("included") or [] if i.get("type") == "betaAppReviewSubmissions"),
            None,
        )
        state = ((submission or {}).get("attributes") or {}).get("betaReviewState")
        if state and state != "REJECTED":
            logger.info("Build %s beta review state: %s", build_id, state)
            return
        try:
            await self._request(
                "POST",
                "/v1/betaAppReviewSubmissions",
                json={
                    "data": {
                        "type": "betaAppReviewSubmissions",
                        "relationships": {"build": {"data": {"type": "builds", "id": build_id}}},
                    }
                },
            )
        except AppStoreError as e:
            if e.status_code != 409:
                raise
