"""CLI entry point for the release dashboard."""

import asyncio
import json
import logging
import sys

import click

from release_dashboard.config import get_config
from release_dashboard.core import actions
from release_dashboard.integrations.http import IntegrationError
from release_dashboard.integrations.slack import SlackError
from release_dashboard.runtime import build_runtime
from release_dashboard.sources import build_sources
from release_dashboard.state.cache import DashboardState
from release_dashboard.state.snapshot import load_snapshot

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """rdash - Release Dashboard CLI"""
    config = get_config()
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _project(config, project_id):
    project = actions.find_project(config, project_id)
    if project is None:
        _fail(f"Project not found: {project_id}")
    return project


def _load_state(config) -> DashboardState:
    state = DashboardState()
    root = load_snapshot(config.cache_path)
    if root is not None:
        state.load(root)
    return state


async def _with_sources(config, action):
    sources = build_sources(config)
    try:
        return await action(sources)
    finally:
        await sources.close()


# ── Dashboard Commands ───────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=False, help="Open browser automatically")
def serve_command(host, port, open):
    """Launch the web dashboard and the refresh scheduler."""
    import webbrowser

    from release_dashboard.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


@main.command("refresh")
@click.option("--full", is_flag=True, help="Refetch every job's history instead of diffing")
def refresh_command(full):
    """Run one refresh cycle and write the snapshot."""
    config = get_config()
    runtime = build_runtime(config)

    async def run():
        try:
            if not full:
                runtime.load_snapshot()
            await runtime.orchestrator.refresh(full=full)
        finally:
            await runtime.close()

    asyncio.run(run())
    state = runtime.state
    click.echo(f"Refresh complete ({runtime.orchestrator.last_cycle}): {len(state.projects)} projects")
    for project in state.projects:
        suffix = f" [error: {project.error}]" if project.error else ""
        click.echo(f"  {project.id}: {len(project.branches)} branches{suffix}")
    click.echo(f"Snapshot: {config.cache_path}")


@main.command("status")
@click.option("--project", "project_id", default=None, help="Only show this project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_command(project_id, json_output):
    """Show the cached track matrix."""
    config = get_config()
    state = _load_state(config)
    projects = state.projects
    if project_id:
        projects = [p for p in projects if p.id == project_id]

    if json_output:
        click.echo(json.dumps([p.to_dict() for p in projects], indent=2))
        return

    if not projects:
        click.echo("No cached data. Run `rdash refresh` first.")
        return

    click.echo(f"Last updated: {state.root.last_updated}")
    for project in projects:
        click.echo(f"{project.display_name} ({project.id})")
        if project.error:
            click.echo(f"  error: {project.error}")
        for branch in project.branches:
            tracks = branch.tracks
            cells = []
            for name in ("dev", "alpha", "release"):
                slot = tracks.slot(name)
                parts = [f"{p}={s.status}" for p in ("ios", "android") if (s := slot.get(p)) is not None]
                if parts:
                    cells.append(f"{name}[{' '.join(parts)}]")
            version = f" {branch.version}" if branch.version else ""
            click.echo(f"  {branch.name}{version}: {' '.join(cells) or 'no builds'}")


# ── Action Commands ──────────────────────────────────────────────────────────


@main.command("trigger")
@click.argument("project_id")
@click.option("--branch", default="main", help="Branch to build")
@click.option("--build-type", default="Debug", type=click.Choice(["Debug", "Release"]))
@click.option("--platform", "platforms", multiple=True, type=click.Choice(["ios", "android"]))
def trigger_command(project_id, branch, build_type, platforms):
    """Trigger CI builds for a project."""
    config = get_config()
    project = _project(config, project_id)
    try:
        results = asyncio.run(_with_sources(
            config, lambda s: actions.trigger_builds(s, project, branch, build_type, list(platforms) or None)
        ))
    except actions.NotConfiguredError as e:
        _fail(str(e))
    for r in results:
        mark = "✓" if r["success"] else "✗"
        click.echo(f"  {mark} {r['platform']}: {r['job']}{' ' + r['error'] if r.get('error') else ''}")
    if not any(r["success"] for r in results):
        sys.exit(1)


@main.command("history")
@click.argument("project_id")
@click.option("--branch", default="main")
@click.option("--build-type", default="Debug", type=click.Choice(["Debug", "Release"]))
def history_command(project_id, branch, build_type):
    """Show recent builds for a branch, one line per version."""
    config = get_config()
    project = _project(config, project_id)
    try:
        rows = asyncio.run(_with_sources(config, lambda s: actions.build_history(s, project, branch, build_type)))
    except actions.NotConfiguredError as e:
        _fail(str(e))
    if not rows:
        click.echo("No builds found.")
        return
    for row in rows:
        ios = f"ios #{row['iosBuildNumber']} {row['iosResult']}" if row["iosJob"] else ""
        android = f"android #{row['androidBuildNumber']} {row['androidResult']}" if row["androidJob"] else ""
        click.echo(f"  {row['version']}: {ios}  {android}".rstrip())


@main.command("promote")
@click.argument("project_id")
@click.option("--from", "from_track", default="storeInternal", help="Source track slot")
@click.option("--to", "to_track", default="storeAlpha", help="Destination track slot")
@click.option("--platform", "platforms", multiple=True, type=click.Choice(["ios", "android"]))
@click.option("--notes", default=None, help="Release notes (en-US)")
def promote_command(project_id, from_track, to_track, platforms, notes):
    """Promote the newest build between store tracks."""
    config = get_config()
    project = _project(config, project_id)
    results = asyncio.run(_with_sources(
        config,
        lambda s: actions.promote(config, s, project, from_track, to_track, list(platforms) or None, notes),
    ))
    for r in results:
        mark = "✓" if r.get("success") else "✗"
        click.echo(f"  {mark} {r['platform']}{': ' + r['error'] if r.get('error') else ''}")
    if not any(r.get("success") for r in results):
        sys.exit(1)


@main.command("rollout")
@click.argument("project_id")
@click.argument("action", type=click.Choice(list(actions.ROLLOUT_ACTIONS)))
@click.option("--fraction", type=float, default=None, help="User fraction in (0, 1]")
@click.option("--country", default=None, help="Restrict the rollout to one country code")
def rollout_command(project_id, action, fraction, country):
    """Start, update or halt the Android staged rollout."""
    config = get_config()
    project = _project(config, project_id)
    try:
        result = asyncio.run(_with_sources(
            config, lambda s: actions.rollout(s, project, action, user_fraction=fraction, country=country)
        ))
    except (ValueError, actions.NotConfiguredError, IntegrationError) as e:
        _fail(str(e))
    click.echo(f"Rollout {action}: {json.dumps(result)}")


@main.command("notify")
@click.argument("project_id")
@click.option("--from", "from_cs", required=True, type=int, help="Previous release changeset")
@click.option("--to", "to_cs", required=True, type=int, help="New release changeset")
@click.option("--branch", default="main")
@click.option("--status", default="building", help="building, released, failed ...")
@click.option("--channel", default=None, help="Slack channel (uses SLACK_CHANNEL if not set)")
def notify_command(project_id, from_cs, to_cs, branch, status, channel):
    """Post release notes for a changeset range to Slack."""
    config = get_config()
    project = _project(config, project_id)
    state = _load_state(config)

    async def run():
        changesets = await actions.release_changesets(config, state, project, branch, from_cs, to_cs)
        message = await actions.post_release(
            config, project, branch, from_cs, to_cs, changesets, status=status, channel=channel
        )
        return message, len(changesets)

    try:
        message, count = asyncio.run(run())
    except (actions.NotConfiguredError, SlackError) as e:
        _fail(str(e))
    click.echo(f"Release notes posted to {message.channel} ({count} changesets, ts: {message.ts})")


if __name__ == "__main__":
    main()
