"""Assemble config, state, sources and the refresh machinery for one process."""

import logging
from dataclasses import dataclass

from release_dashboard.config import Config
from release_dashboard.core.refresh import RefreshOrchestrator, RefreshScheduler
from release_dashboard.sources import Sources, build_sources
from release_dashboard.state.cache import DashboardState
from release_dashboard.state.events import EventBus
from release_dashboard.state.snapshot import SnapshotWriter, load_snapshot

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    state: DashboardState
    sources: Sources
    events: EventBus
    writer: SnapshotWriter
    orchestrator: RefreshOrchestrator
    scheduler: RefreshScheduler

    def load_snapshot(self) -> bool:
        """Seed state from the disk snapshot if one is usable."""
        root = load_snapshot(self.config.cache_path)
        if root is None:
            return False
        self.state.load(root)
        return True

    async def close(self):
        await self.scheduler.stop()
        await self.orchestrator.wait_until_idle()
        await self.writer.flush()
        await self.sources.close()


def build_runtime(
    config: Config,
    sources: Sources | None = None,
    state: DashboardState | None = None,
    debounce: float | None = None,
) -> Runtime:
    state = state or DashboardState()
    sources = sources if sources is not None else build_sources(config)
    events = EventBus()
    writer = SnapshotWriter(config.cache_path, state.snapshot)
    if debounce is not None:
        writer.debounce = debounce
    orchestrator = RefreshOrchestrator(config, state, sources, events, writer)
    scheduler = RefreshScheduler(orchestrator, config.refresh_interval)
    return Runtime(config, state, sources, events, writer, orchestrator, scheduler)
