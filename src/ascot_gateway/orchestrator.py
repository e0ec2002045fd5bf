"""Discovery passes: probe announced devices, persist them and build controls."""

from __future__ import annotations

import asyncio
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import Config
from .db import DatabaseCorruptionError
from .devices import DeviceEntry, DeviceStore, ProbedDevice
from .discovery import DiscoveredService, DiscoverySource, InvalidDiscoveryRecord
from .logging import get_logger
from .manifest import ManifestClient, build_addresses
from .metrics import observe_discovery_pass, record_discovery_error, set_known_devices


class PassError(RuntimeError):
    """Raised when a discovery pass cannot be written and was rolled back."""


@dataclass
class PassResult:
    """Devices produced by one discovery pass."""

    devices: List[DeviceEntry] = field(default_factory=list)
    hazards: List[int] = field(default_factory=list)
    skipped: int = 0
    unreachable: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "devices": [device.as_dict() for device in self.devices],
            "hazards": list(self.hazards),
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "failed": self.failed,
        }


class DiscoveryOrchestrator:
    """Runs discovery passes against an injected source, client and store."""

    def __init__(
        self,
        config: Config,
        store: DeviceStore,
        source: DiscoverySource,
        client: Optional[ManifestClient] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.source = source
        self.client = client or ManifestClient(config.manifest_request_timeout)
        self.logger = get_logger("ascot.orchestrator")
        self._semaphore = asyncio.Semaphore(max(1, config.manifest_max_concurrency))
        self._pass_lock = asyncio.Lock()
        self._last_result = PassResult()

    @property
    def last_result(self) -> PassResult:
        return self._last_result

    async def start(self) -> None:
        await self.client.start()
        await self.source.start()

    async def stop(self) -> None:
        await self.source.stop()
        await self.client.stop()

    async def run_pass(self, records: Optional[Sequence[DiscoveredService]] = None) -> PassResult:
        """Run one pass over `records`, or over a fresh browse of the source.

        An empty batch returns an empty result and leaves the store untouched.
        Raises :class:`PassError` when the store could not be rewritten.
        """

        async with self._pass_lock:
            started = time.perf_counter()
            if records is None:
                records = await self.source.browse()
            valid, skipped = self._validate(records)
            if not valid:
                observe_discovery_pass("empty", time.perf_counter() - started)
                self.logger.info(
                    "Empty discovery batch; keeping stored devices",
                    extra={"skipped": skipped},
                )
                return PassResult(skipped=skipped)

            probed = await asyncio.gather(*(self._probe(record) for record in valid))
            try:
                write = await self.store.apply_pass(probed)
            except (sqlite3.Error, DatabaseCorruptionError) as exc:
                observe_discovery_pass("error", time.perf_counter() - started)
                self.logger.exception("Discovery pass rolled back")
                raise PassError("discovery pass could not be stored") from exc

            hazards = set()
            for device in write.devices:
                hazards.update(device.data.hazards)
            result = PassResult(
                devices=write.devices,
                hazards=sorted(hazards),
                skipped=skipped,
                unreachable=write.unreachable,
                failed=write.failed,
            )
            self._last_result = result
            set_known_devices(len(result.devices))
            duration = time.perf_counter() - started
            observe_discovery_pass("ok", duration)
            self.logger.info(
                "Discovery pass completed",
                extra={
                    "devices": len(result.devices),
                    "hazards": len(result.hazards),
                    "skipped": result.skipped,
                    "unreachable": result.unreachable,
                    "failed": result.failed,
                    "duration_ms": round(duration * 1000, 2),
                },
            )
            return result

    def _validate(self, records: Sequence[DiscoveredService]) -> Tuple[List[DiscoveredService], int]:
        valid: List[DiscoveredService] = []
        skipped = 0
        for record in records:
            try:
                record.validate()
            except InvalidDiscoveryRecord as exc:
                skipped += 1
                record_discovery_error("invalid")
                self.logger.warning(
                    "Skipping discovery record",
                    extra={"port": record.port, "error": str(exc)},
                )
                continue
            valid.append(record)
        return valid, skipped

    async def _probe(self, record: DiscoveredService) -> ProbedDevice:
        scheme = record.scheme or self.config.discovery_default_scheme
        path = record.path or self.config.discovery_default_path
        addresses = build_addresses(scheme, record.port, path, record.addresses)
        data = None
        async with self._semaphore:
            try:
                data = await self.client.retrieve(addresses)
            except asyncio.CancelledError:
                raise
            except Exception:
                record_discovery_error("manifest_failed")
                self.logger.exception(
                    "Fetching device manifest failed",
                    extra={"port": record.port, "addresses": list(record.addresses)},
                )
        return ProbedDevice(
            port=record.port,
            scheme=scheme,
            path=path,
            addresses=addresses,
            properties=dict(record.properties),
            data=data,
        )
