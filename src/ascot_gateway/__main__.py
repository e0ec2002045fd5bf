"""Entrypoint for the Ascot gateway."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Iterable, List, Optional

from .api import ApiService
from .config import Config, load_config
from .db import apply_migrations
from .devices import DeviceStore
from .discovery import build_discovery_source
from .health import BackoffPolicy, HealthMonitor
from .logging import configure_logging, get_logger
from .orchestrator import DiscoveryOrchestrator


async def _discovery_loop(
    stop_event: asyncio.Event,
    config: Config,
    orchestrator: DiscoveryOrchestrator,
    health: HealthMonitor,
) -> None:
    logger = get_logger("ascot.orchestrator")
    backoff = BackoffPolicy(
        base=config.backoff_base,
        factor=config.backoff_factor,
        maximum=config.backoff_max,
    )
    start_failures = 0
    while not stop_event.is_set():
        allowed, remaining = await health.allow_attempt("discovery")
        if not allowed:
            logger.warning(
                "Discovery temporarily suppressed after repeated failures",
                extra={"cooldown_seconds": round(remaining, 2)},
            )
            await _wait_or_stop(stop_event, remaining)
            continue
        try:
            await orchestrator.start()
            await health.record_success("discovery")
            start_failures = 0
            break
        except Exception as exc:
            start_failures += 1
            logger.exception("Discovery failed to start")
            await health.record_failure("discovery", exc)
            await _wait_or_stop(stop_event, backoff.delay(start_failures))
    else:
        return

    logger.info("Discovery loop starting", extra={"interval": config.discovery_interval})
    failures = 0
    try:
        while not stop_event.is_set():
            allowed, remaining = await health.allow_attempt("discovery")
            if not allowed:
                logger.warning(
                    "Discovery temporarily suppressed after repeated failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await _wait_or_stop(stop_event, remaining)
                continue
            try:
                await orchestrator.run_pass()
                await health.record_success("discovery")
                failures = 0
            except Exception as exc:
                logger.exception("Discovery pass failed")
                failures += 1
                await health.record_failure("discovery", exc)
                await _wait_or_stop(stop_event, backoff.delay(failures))
                continue
            await _wait_or_stop(stop_event, config.discovery_interval)
    except asyncio.CancelledError:
        logger.info("Discovery loop cancelled")
        raise
    finally:
        await orchestrator.stop()
        logger.info("Discovery loop stopped")


async def _api_loop(stop_event: asyncio.Event, service: ApiService) -> None:
    logger = get_logger("ascot.api")
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("API loop stopped")


async def _run_async(config: Config) -> None:
    logger = get_logger("ascot")
    stop_event = asyncio.Event()
    store = DeviceStore(config.db_path)
    await store.start()
    health = HealthMonitor(
        ("discovery",),
        failure_threshold=config.subsystem_failure_threshold,
        cooldown_seconds=config.subsystem_failure_cooldown,
    )
    orchestrator = DiscoveryOrchestrator(config, store, build_discovery_source(config))
    api = ApiService(config, orchestrator, store, health=health)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_discovery_loop(stop_event, config, orchestrator, health)),
        asyncio.create_task(_api_loop(stop_event, api)),
    ]
    logger.info(
        "Gateway services started",
        extra={
            "api_port": config.api_port,
            "db_path": str(config.db_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        await store.stop()
        logger.info("Gateway shutdown complete")


async def _shutdown_tasks(
    tasks: Iterable[asyncio.Task[None]], logger: logging.Logger
) -> None:
    for task in tasks:
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await asyncio.gather(*tasks)
    logger.debug("Background tasks stopped")


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("ascot")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
