"""Plastic SCM changeset queries through the ``cm`` command line."""

import asyncio
import logging
import re
from datetime import datetime

from release_dashboard.state.models import CommitInfo

logger = logging.getLogger(__name__)

CM_TIMEOUT = 10.0
RANGE_TIMEOUT = 30.0

_DATE = re.compile(r"(\d+)/(\d+)/(\d+)\s+(\d+):(\d+):(\d+)\s+(am|pm)", re.IGNORECASE)


class PlasticError(Exception):
    """Raised when a cm command fails or times out."""


def plastic_branch(branch: str) -> str:
    return "/main" if branch == "main" else f"/main/{branch}"


def parse_date(text: str) -> int:
    """Parse ``DD/MM/YYYY H:MM:SS am|pm`` (local time) into epoch milliseconds; 0 if unparseable."""
    match = _DATE.search(text or "")
    if not match:
        return 0
    day, month, year, hours, minutes, seconds = (int(g) for g in match.groups()[:6])
    meridiem = match.group(7).lower()
    if meridiem == "pm" and hours != 12:
        hours += 12
    elif meridiem == "am" and hours == 12:
        hours = 0
    try:
        return int(datetime(year, month, day, hours, minutes, seconds).timestamp() * 1000)
    except ValueError:
        return 0


def parse_changesets(output: str) -> list[CommitInfo]:
    """Parse ``{changesetid}|{owner}|{date}|{comment}`` lines."""
    changesets = []
    for line in output.splitlines():
        parts = line.split("|")
        if len(parts) < 4 or not parts[0].strip().isdigit():
            continue
        changeset_id, owner, date, *comment = parts
        changesets.append(
            CommitInfo(
                message="|".join(comment).strip(),
                author=owner.strip() or "Unknown",
                version=str(int(changeset_id)),
                timestamp=parse_date(date),
            )
        )
    return changesets


async def run_cm(args: list[str], timeout: float = CM_TIMEOUT) -> str:
    """Run a cm command and return stdout. Raises PlasticError on failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "cm", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise PlasticError(f"cm {args[0]} failed: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise PlasticError(f"cm {args[0]} timed out after {timeout:.0f}s") from e

    if proc.returncode != 0:
        raise PlasticError(f"cm {args[0]} failed: {stderr.decode(errors='replace').strip()}")
    return stdout.decode(errors="replace")


def _find_changeset(query: str, fmt: str) -> list[str]:
    return ["find", "changeset", query, f"--format={fmt}", "--nototal"]


async def get_recent_changesets(repository: str, branch: str = "main", limit: int = 10) -> list[CommitInfo]:
    """Newest ``limit`` changesets on ``branch``, newest first."""
    query = (
        f"where branch='{plastic_branch(branch)}' order by changesetid desc "
        f"limit {limit} on repository '{repository}'"
    )
    output = await run_cm(_find_changeset(query, "{changesetid}|{owner}|{date}|{comment}"))
    changesets = parse_changesets(output)
    logger.debug("%s/%s: %d changesets", repository, branch, len(changesets))
    return changesets


async def get_latest_changeset(repository: str, branch: str = "main") -> int | None:
    query = f"where branch='{plastic_branch(branch)}' order by changesetid desc limit 1 on repository '{repository}'"
    output = (await run_cm(_find_changeset(query, "{changesetid}"))).strip()
    return int(output) if output.isdigit() else None


async def get_changeset_range(
    repository: str,
    from_changeset: int,
    to_changeset: int,
    branch: str = "main",
) -> list[CommitInfo]:
    """Changesets in ``(from_changeset, to_changeset]`` made directly on ``branch``."""
    logger.info("Getting changeset range %s: %s..%s on %s", repository, from_changeset, to_changeset, branch)
    query = (
        f"where changesetid > {from_changeset} and changesetid <= {to_changeset} "
        f"and branch='{plastic_branch(branch)}' on repository '{repository}'"
    )
    output = await run_cm(_find_changeset(query, "{changesetid}|{owner}|{date}|{comment}"), timeout=RANGE_TIMEOUT)
    changesets = parse_changesets(output)
    changesets.sort(key=lambda c: int(c.version), reverse=True)
    return changesets
