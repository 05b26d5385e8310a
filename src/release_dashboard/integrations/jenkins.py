"""Jenkins REST API reader and build trigger."""

import asyncio
import html
import logging
import re
import time
from dataclasses import replace

from release_dashboard.integrations.http import ApiClient, IntegrationError
from release_dashboard.state.models import (
    BuildRecord,
    BuildStatus,
    CommitInfo,
    PipelineStages,
    QueuedBuild,
)

logger = logging.getLogger(__name__)

BUILDS_TREE = (
    "builds[number,displayName,result,timestamp,duration,"
    "actions[id,text,parameters[name,value],lastBuiltRevision[branch[name]],urlName],"
    "changeSets[items[msg,author[fullName]]]]"
)
QUEUE_TREE = "items[id,task[name],actions[parameters[name,value]]]"
ENV_ACTION_CLASS = "org.jenkinsci.plugins.workflow.cps.EnvActionImpl"
MAX_ERROR_LOOKUPS = 10

_BADGE_CHANGESET = re.compile(r"badge/([^-]+)-(\d+)")
_HREF = re.compile(r'href="([^"]+)"')


class JenkinsError(IntegrationError):
    service = "Jenkins"


def _params(actions: list[dict]) -> dict[str, str]:
    params = {}
    for action in actions or []:
        for param in action.get("parameters") or []:
            if "name" in param:
                params[param["name"]] = param.get("value")
    return params


def _download_href(text: str) -> str | None:
    if match := _HREF.search(text):
        return html.unescape(match.group(1).replace("&#61;", "="))
    return None


def parse_build(job_name: str, raw: dict) -> BuildRecord:
    """Turn one ``builds[]`` entry from the job API into a BuildRecord."""
    branch = None
    changeset = None
    download_url = None

    for action in raw.get("actions") or []:
        revision = action.get("lastBuiltRevision")
        if revision and revision.get("branch"):
            ref = revision["branch"][0].get("name") or ""
            branch = ref.removeprefix("refs/heads/").removeprefix("origin/") or None

        text = action.get("text")
        if action.get("id") == "branch" and text:
            if match := _BADGE_CHANGESET.search(text):
                changeset = match.group(2)
        if action.get("id") in ("ipa", "apk") and text:
            download_url = _download_href(text) or download_url
        elif action.get("urlName") and text and "Download" in text:
            download_url = action["urlName"]

    params = _params(raw.get("actions"))
    branch = branch or params.get("BRANCH") or "main"
    changeset = params.get("CHANGESET") or params.get("P4_CHANGELIST") or changeset
    version = changeset or params.get("VERSION") or params.get("BUILD_VERSION")

    commits = []
    for change_set in raw.get("changeSets") or []:
        for item in change_set.get("items") or []:
            commits.append(
                CommitInfo(
                    message=(item.get("msg") or "").split("\n", 1)[0],
                    author=(item.get("author") or {}).get("fullName") or "Unknown",
                )
            )

    return BuildRecord(
        number=raw["number"],
        job_name=job_name,
        version=str(version) if version is not None else None,
        result=raw.get("result"),
        timestamp=raw.get("timestamp") or 0,
        duration=raw.get("duration") or 0,
        branch=branch,
        build_type=params.get("BUILD_TYPE") or "Debug",
        download_url=download_url,
        commits=tuple(commits),
    )


def parse_queue(data: dict) -> list[QueuedBuild]:
    queued = []
    for item in data.get("items") or []:
        job_name = (item.get("task") or {}).get("name")
        if not job_name:
            continue
        params = _params(item.get("actions"))
        queued.append(
            QueuedBuild(
                job_name=job_name,
                branch=params.get("BRANCH") or "main",
                build_type=params.get("BUILD_TYPE") or "Debug",
                id=item.get("id"),
            )
        )
    return queued


def parse_pipeline(data: dict) -> PipelineStages:
    stages = data.get("stages") or []
    current = next((s["name"] for s in stages if s.get("status") == "IN_PROGRESS"), None)
    completed = [s for s in stages if s.get("status") == "SUCCESS"]
    return PipelineStages(
        status=data.get("status"),
        current_stage=current,
        last_completed_stage=completed[-1]["name"] if completed else None,
        total_stages=len(stages),
        completed_count=len(completed),
        stages=[
            {"name": s.get("name"), "status": s.get("status"), "durationMillis": s.get("durationMillis")}
            for s in stages
        ],
    )


class JenkinsClient(ApiClient):
    """Reads build history, queue and pipeline state; triggers builds."""

    error_class = JenkinsError

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        api_token: str | None = None,
        history_days: int = 30,
        timeout: float = 30.0,
        transport=None,
    ):
        auth = (username, api_token) if username and api_token else None
        super().__init__(base_url, timeout=timeout, transport=transport, auth=auth)
        self.history_days = history_days

    def build_url(self, job_name: str, number: int) -> str:
        return f"{self.base_url}/job/{job_name}/{number}/pipeline-overview/"

    async def list_recent_builds(self, job_name: str, since_number: int | None = None) -> list[BuildRecord]:
        """Builds newer than ``since_number``, or within the history window."""
        if since_number:
            logger.info("Fetching builds: %s (since #%s)", job_name, since_number)
        else:
            logger.info("Fetching builds: %s (last %s days)", job_name, self.history_days)

        data = await self._request("GET", f"/job/{job_name}/api/json", params={"tree": BUILDS_TREE})
        cutoff = (time.time() - self.history_days * 86400) * 1000

        builds = []
        for raw in data.get("builds") or []:
            if since_number and raw["number"] <= since_number:
                break
            if not since_number and (raw.get("timestamp") or 0) < cutoff:
                break
            builds.append(parse_build(job_name, raw))

        builds.sort(key=lambda b: b.timestamp, reverse=True)
        builds = await self._attach_error_analysis(job_name, builds)
        logger.info("%s: fetched %d builds", job_name, len(builds))
        return builds

    async def _attach_error_analysis(self, job_name: str, builds: list[BuildRecord]) -> list[BuildRecord]:
        """Annotate the newest failed build per branch/build type with ERROR_ANALYSIS."""
        seen = set()
        targets = []
        for index, build in enumerate(builds):
            if build.result not in ("FAILURE", "UNSTABLE"):
                continue
            key = (build.branch, build.build_type)
            if key in seen:
                continue
            seen.add(key)
            targets.append(index)
        targets = targets[:MAX_ERROR_LOOKUPS]
        if not targets:
            return builds

        envs = await asyncio.gather(
            *(self.get_build_env(job_name, builds[i].number) for i in targets),
            return_exceptions=True,
        )
        builds = list(builds)
        for index, env in zip(targets, envs):
            if isinstance(env, Exception):
                logger.debug("No env vars for %s#%s: %s", job_name, builds[index].number, env)
                continue
            if env and env.get("ERROR_ANALYSIS"):
                builds[index] = replace(builds[index], error_analysis=env["ERROR_ANALYSIS"])
        return builds

    async def get_build_env(self, job_name: str, number: int) -> dict | None:
        data = await self._request(
            "GET", f"/job/{job_name}/{number}/api/json", params={"depth": 2}, timeout=5.0
        )
        for action in data.get("actions") or []:
            if action.get("_class") == ENV_ACTION_CLASS and action.get("environment"):
                return action["environment"]
        return None

    async def list_queued_builds(self) -> list[QueuedBuild]:
        data = await self._request("GET", "/queue/api/json", params={"tree": QUEUE_TREE})
        return parse_queue(data)

    async def get_last_build_number(self, job_name: str) -> int | None:
        data = await self._request("GET", f"/job/{job_name}/api/json", params={"tree": "lastBuild[number]"})
        return (data.get("lastBuild") or {}).get("number")

    async def get_build_statuses(self, refs: list[tuple[str, int]]) -> list[BuildStatus]:
        """Current result for each ``(job_name, number)``; unreachable builds are skipped."""

        async def one(job_name: str, number: int) -> BuildStatus | None:
            try:
                data = await self._request(
                    "GET",
                    f"/job/{job_name}/{number}/api/json",
                    params={"tree": "number,result,timestamp,duration"},
                )
            except JenkinsError as e:
                logger.debug("Failed to get status for %s#%s: %s", job_name, number, e)
                return None
            return BuildStatus(
                job_name=job_name,
                number=data.get("number", number),
                result=data.get("result"),
                timestamp=data.get("timestamp") or 0,
                duration=data.get("duration") or 0,
            )

        results = await asyncio.gather(*(one(j, n) for j, n in refs))
        return [r for r in results if r is not None]

    async def get_pipeline_stages(self, job_name: str, number: int) -> PipelineStages:
        data = await self._request("GET", f"/job/{job_name}/{number}/wfapi/describe")
        return parse_pipeline(data)

    async def get_build_history(self, job_name: str, limit: int = 20) -> list[dict]:
        """Lightweight recent-build listing (no commits, no artifacts)."""
        tree = f"builds[number,displayName,result,timestamp,actions[parameters[name,value]]]{{0,{limit}}}"
        data = await self._request("GET", f"/job/{job_name}/api/json", params={"tree": tree})
        history = []
        for raw in data.get("builds") or []:
            params = _params(raw.get("actions"))
            version = (
                params.get("VERSION")
                or params.get("BUILD_VERSION")
                or raw.get("displayName")
                or params.get("CHANGESET")
                or f"#{raw['number']}"
            )
            history.append({
                "number": raw["number"],
                "result": raw.get("result"),
                "timestamp": raw.get("timestamp"),
                "branch": params.get("BRANCH") or "main",
                "buildType": params.get("BUILD_TYPE") or "Debug",
                "version": version,
                "jobName": job_name,
            })
        return history

    async def trigger_build(self, job_name: str, params: dict[str, str]) -> bool:
        response = await self._send("POST", f"/job/{job_name}/buildWithParameters", data=params)
        logger.info("Triggered %s (%s) -> HTTP %s", job_name, params, response.status_code)
        return response.is_success
