"""Google Analytics 4 Data API reader for active users per app version."""

import logging
from dataclasses import dataclass, field

from release_dashboard.integrations.http import ApiClient, IntegrationError

logger = logging.getLogger(__name__)

ANALYTICS_BASE_URL = "https://analyticsdata.googleapis.com/v1beta"
REPORT_LIMIT = 20


class AnalyticsError(IntegrationError):
    service = "Analytics"


@dataclass
class UsersByVersion:
    ios: list[dict] = field(default_factory=list)
    android: list[dict] = field(default_factory=list)

    def total(self, platform: str) -> int:
        return sum(entry["activeUsers"] for entry in getattr(self, platform))

    def users_for(self, platform: str, version: str | None) -> int | None:
        if not version:
            return None
        return next((e["activeUsers"] for e in getattr(self, platform) if e["version"] == version), None)

    def to_dict(self) -> dict:
        return {"ios": self.ios, "android": self.android}


def parse_report(data: dict) -> UsersByVersion:
    users = UsersByVersion()
    for row in data.get("rows") or []:
        dimensions = row.get("dimensionValues") or []
        metrics = row.get("metricValues") or []
        platform = (dimensions[0].get("value") or "").lower() if dimensions else ""
        if platform not in ("ios", "android"):
            continue
        version = dimensions[1].get("value") if len(dimensions) > 1 else None
        try:
            active = int(metrics[0].get("value") or 0) if metrics else 0
        except ValueError:
            active = 0
        getattr(users, platform).append({"version": version or "unknown", "activeUsers": active})
    return users


def report_request(days: int, platform: str | None = None) -> dict:
    body = {
        "dateRanges": [{"startDate": f"{days}daysAgo", "endDate": "today"}],
        "metrics": [{"name": "activeUsers"}],
        "dimensions": [{"name": "platform"}, {"name": "appVersion"}],
        "orderBys": [{"metric": {"metricName": "activeUsers"}, "desc": True}],
        "limit": REPORT_LIMIT,
    }
    if platform:
        body["dimensionFilter"] = {
            "filter": {
                "fieldName": "platform",
                "stringFilter": {"matchType": "EXACT", "value": "iOS" if platform == "ios" else "Android"},
            }
        }
    return body


class AnalyticsClient(ApiClient):
    error_class = AnalyticsError

    def __init__(self, token_provider, base_url: str = ANALYTICS_BASE_URL, timeout: float = 30.0, transport=None):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.token_provider = token_provider

    async def _headers(self) -> dict[str, str]:
        token = await self.token_provider.get()
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def get_users_by_version(
        self,
        property_id: str,
        platform: str | None = None,
        days: int = 7,
    ) -> UsersByVersion:
        prop = property_id.removeprefix("properties/")
        logger.debug("Running analytics report for property %s", prop)
        data = await self._request("POST", f"/properties/{prop}:runReport", json=report_request(days, platform))
        return parse_report(data)
