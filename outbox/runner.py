"""Entry point for the worker process: bootstrap store, handlers, worker and reaper; run until signalled."""

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from outbox.effects import BuiltinHandlers, EffectsDb, build_notifier
from outbox.events import (
    Dispatcher,
    EventStore,
    HandlerRegistry,
    OutboxWorker,
    StaleClaimReaper,
    make_worker_id,
)
from outbox.logging_config import setup_logging
from outbox.settings import OutboxConfig, load_outbox_config, load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def resolve_db_path(cfg: OutboxConfig, project_root: Path = _PROJECT_ROOT) -> Path:
    path = Path(cfg.db_path)
    return path if path.is_absolute() else project_root / path


def build_store(cfg: OutboxConfig, db_path: Path | None = None) -> EventStore:
    return EventStore(
        db_path=db_path or resolve_db_path(cfg),
        busy_timeout=cfg.busy_timeout,
        default_max_attempts=cfg.max_attempts,
    )


@dataclass
class Engine:
    """Everything one worker process runs."""

    store: EventStore
    effects: EffectsDb
    worker: OutboxWorker
    reaper: StaleClaimReaper

    async def start(self) -> None:
        await self.store.open()
        await self.effects.ensure_conn()
        await self.reaper.start()
        await self.worker.start()

    async def stop(self) -> None:
        await self.worker.stop()
        await self.reaper.stop()
        await self.effects.close()
        await self.store.close()


def build_engine(
    settings: dict[str, Any],
    worker_id: str | None = None,
    db_path: Path | None = None,
) -> Engine:
    """Wire store -> registry -> dispatcher -> worker, plus the reaper, from settings."""
    cfg = load_outbox_config(settings)
    store = build_store(cfg, db_path)
    effects = EffectsDb(store.db_path, busy_timeout=cfg.busy_timeout)

    registry = HandlerRegistry()
    BuiltinHandlers(effects, build_notifier(settings.get("notifications") or {})).register(registry)
    dispatcher = Dispatcher(registry, handler_timeout=cfg.handler_timeout)

    worker = OutboxWorker(
        store,
        dispatcher,
        worker_id=worker_id or make_worker_id(),
        batch_size=cfg.batch_size,
        tick_interval=cfg.tick_interval,
        backoff_cap_minutes=cfg.backoff_cap_minutes,
        backoff_jitter=cfg.backoff_jitter,
        concurrent_dispatch=cfg.concurrent_dispatch,
        lease_seconds=cfg.lease_seconds,
    )
    reaper = StaleClaimReaper(
        store, lease_seconds=cfg.lease_seconds, interval=cfg.reaper_interval
    )
    return Engine(store=store, effects=effects, worker=worker, reaper=reaper)


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt still reaches main()
            pass


async def main_async(
    worker_id: str | None = None,
    db_path: Path | None = None,
    config_dir: Path | None = None,
) -> None:
    """Bootstrap: settings -> logging -> engine -> start -> wait for shutdown -> stop."""
    settings = load_settings(config_dir)
    setup_logging(_PROJECT_ROOT, settings)
    engine = build_engine(settings, worker_id=worker_id, db_path=db_path)
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    await engine.start()
    logger.info("outbox: worker %s running on %s", engine.worker.worker_id, engine.store.db_path)
    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("outbox: shutting down")
        await engine.stop()


def load_env() -> None:
    """Load .env from the project root into os.environ (existing values win)."""
    load_dotenv(_PROJECT_ROOT / ".env")


def main(
    worker_id: str | None = None,
    db_path: Path | None = None,
    config_dir: Path | None = None,
) -> None:
    """Synchronous entry for the worker process."""
    load_env()
    try:
        asyncio.run(main_async(worker_id=worker_id, db_path=db_path, config_dir=config_dir))
    except KeyboardInterrupt:
        pass


__all__ = ["Engine", "build_engine", "build_store", "load_env", "main", "resolve_db_path"]
