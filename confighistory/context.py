"""Engine context — service container for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from confighistory.config import Config
from confighistory.core.diff_engine import DiffEngine
from confighistory.core.hasher import ContentHasher
from confighistory.core.locks import PathLockRegistry
from confighistory.core.orchestrator import BackupOrchestrator
from confighistory.core.restore import RestoreManager
from confighistory.core.state import RuntimeState
from confighistory.core.store import BackupStore

STATE_FILENAME = "state.json"


@dataclass
class EngineContext:
    """
    Central service container.

    The CLI and the boundary service receive this at construction time and
    look services up through it, so ``reload()`` after a settings change is
    seen by every caller.
    """

    config: Config
    locks: PathLockRegistry

    store: BackupStore
    hasher: ContentHasher
    diff_engine: DiffEngine
    restore_manager: RestoreManager
    state: RuntimeState
    orchestrator: BackupOrchestrator

    def reload(self) -> None:
        """Rebuild the engine services from the current settings. The lock registry is kept."""
        fresh = _build(self.config, self.locks)
        self.store = fresh.store
        self.hasher = fresh.hasher
        self.diff_engine = fresh.diff_engine
        self.restore_manager = fresh.restore_manager
        self.state = fresh.state
        self.orchestrator = fresh.orchestrator
        logger.info("Engine services reloaded from settings")


def _build(config: Config, locks: PathLockRegistry) -> EngineContext:
    store = BackupStore(config.backup_dir, locks, io_timeout=config.io_timeout)
    hasher = ContentHasher(config.home_assistant_config_dir)
    diff_engine = DiffEngine(max_bytes=config.max_diff_bytes)
    restore_manager = RestoreManager()
    state = RuntimeState(config.backup_dir / STATE_FILENAME)
    state.load()
    orchestrator = BackupOrchestrator(config, store, hasher, diff_engine, restore_manager, state)
    return EngineContext(
        config=config,
        locks=locks,
        store=store,
        hasher=hasher,
        diff_engine=diff_engine,
        restore_manager=restore_manager,
        state=state,
        orchestrator=orchestrator,
    )


def create_context(config: Config | None = None, data_dir: Path | None = None) -> EngineContext:
    """Wire all engine services and return an EngineContext."""
    if config is None:
        config = Config(data_dir=data_dir)
    locks = PathLockRegistry(timeout=config.lock_timeout)
    return _build(config, locks)
