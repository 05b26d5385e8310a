"""Changeset extraction and version formatting helpers."""

import re

_BUILD_SUFFIX = re.compile(r"\s*\([0-9]+\)")
_PAREN_DIGITS = re.compile(r"\(([0-9]+)\)")
_DIGITS = re.compile(r"[0-9]+")


def extract_changeset(version: str | int | None) -> int | None:
    """Return the changeset number embedded in a version string.

    Accepts ``"1.91.11965"``, ``"1.91.11965 (34120)"``, ``"(34120)"``,
    ``"11965"`` or a plain integer. Returns None when nothing matches.
    """
    if version is None or isinstance(version, bool):
        return None
    if isinstance(version, int):
        return version

    text = str(version).strip()
    if not text:
        return None

    stripped = _BUILD_SUFFIX.sub("", text).strip()
    parts = stripped.split(".")
    if len(parts) >= 3 and _DIGITS.fullmatch(parts[-1]):
        return int(parts[-1])

    if match := _PAREN_DIGITS.search(text):
        return int(match.group(1))

    if _DIGITS.fullmatch(stripped):
        return int(stripped)

    return None


def changeset_rank(version: str | int | None) -> int:
    """Sort key for changesets; unparseable versions rank below any real one."""
    changeset = extract_changeset(version)
    return -1 if changeset is None else changeset


def format_store_version(version: str | None, build: str | int | None) -> str | None:
    """Render a store version as ``"2.0.120 (45)"``, or the bare version without a build."""
    if build in (None, ""):
        return version
    if not version:
        return str(build)
    return f"{version} ({build})"


def slugify(name: str) -> str:
    """Project id from a display name: lower-case, whitespace runs become dashes."""
    return re.sub(r"\s+", "-", name.strip().lower())
