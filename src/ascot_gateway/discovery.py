"""Discovery sources yielding announced Ascot devices."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .config import Config, ManualDevice
from .logging import get_logger
from .metrics import record_discovery_error, record_discovery_response

RESOLVE_TIMEOUT_MS = 3000


class InvalidDiscoveryRecord(ValueError):
    """Raised for announcements that cannot be probed."""


@dataclass(frozen=True)
class DiscoveredService:
    """One device announcement: where its manifest can be fetched."""

    port: int
    addresses: Sequence[str]
    scheme: Optional[str] = None
    path: Optional[str] = None
    properties: Mapping[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.addresses:
            raise InvalidDiscoveryRecord("discovery record has no addresses")
        if not 0 < self.port <= 65535:
            raise InvalidDiscoveryRecord(f"invalid port {self.port}")


def service_from_manual(device: ManualDevice) -> DiscoveredService:
    return DiscoveredService(
        port=device.port,
        addresses=tuple(device.addresses),
        scheme=device.scheme,
        path=device.path,
        properties=dict(device.properties or {}),
    )


def decode_properties(raw: Mapping[Any, Any]) -> Dict[str, str]:
    """Decode mDNS TXT properties into text; valueless keys map to ``""``."""

    decoded: Dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        if value is None:
            value = ""
        elif isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        decoded[str(key)] = str(value)
    return decoded


def service_from_info(info: AsyncServiceInfo) -> DiscoveredService:
    """Build a discovery record from a resolved mDNS service."""

    properties = decode_properties(info.properties or {})
    return DiscoveredService(
        port=int(info.port or 0),
        addresses=tuple(info.parsed_addresses()),
        scheme=properties.get("scheme") or None,
        path=properties.get("path") or None,
        properties=properties,
    )


class DiscoverySource(ABC):
    """Long-lived discovery handle with an explicit lifecycle."""

    name = "source"

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def browse(self) -> List[DiscoveredService]:
        """Return the devices announced during one discovery pass."""


class StaticDiscoverySource(DiscoverySource):
    """Announces manually configured devices."""

    name = "manual"

    def __init__(self, devices: Sequence[ManualDevice]) -> None:
        self.devices = tuple(devices)

    async def browse(self) -> List[DiscoveredService]:
        records = [service_from_manual(device) for device in self.devices]
        for _ in records:
            record_discovery_response(self.name)
        return records


class MdnsDiscoverySource(DiscoverySource):
    """Browses the local network for the gateway's mDNS service type."""

    name = "mdns"

    def __init__(
        self,
        service_type: str,
        browse_timeout: float,
        *,
        resolve_timeout_ms: int = RESOLVE_TIMEOUT_MS,
    ) -> None:
        self.service_type = service_type
        self.browse_timeout = browse_timeout
        self.resolve_timeout_ms = resolve_timeout_ms
        self.logger = get_logger("ascot.discovery.mdns")
        self._zeroconf: Optional[AsyncZeroconf] = None

    async def start(self) -> None:
        if self._zeroconf is not None:
            return
        self._zeroconf = AsyncZeroconf()
        self.logger.info("mDNS discovery started", extra={"service_type": self.service_type})

    async def stop(self) -> None:
        if self._zeroconf is None:
            return
        await self._zeroconf.async_close()
        self._zeroconf = None
        self.logger.info("mDNS discovery stopped")

    async def browse(self) -> List[DiscoveredService]:
        if self._zeroconf is None:
            await self.start()
        assert self._zeroconf is not None
        names: List[str] = []

        def _on_change(
            zeroconf: Zeroconf,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change is ServiceStateChange.Removed:
                return
            if name not in names:
                names.append(name)

        browser = AsyncServiceBrowser(
            self._zeroconf.zeroconf, [self.service_type], handlers=[_on_change]
        )
        try:
            await asyncio.sleep(self.browse_timeout)
        finally:
            await browser.async_cancel()

        records: List[DiscoveredService] = []
        for name in names:
            info = AsyncServiceInfo(self.service_type, name)
            if not await info.async_request(self._zeroconf.zeroconf, self.resolve_timeout_ms):
                record_discovery_error("unresolved")
                self.logger.warning("Failed to resolve mDNS service", extra={"service": name})
                continue
            record = service_from_info(info)
            record_discovery_response(self.name)
            self.logger.debug(
                "Resolved mDNS service",
                extra={"service": name, "port": record.port, "addresses": list(record.addresses)},
            )
            records.append(record)
        return records


class CompositeDiscoverySource(DiscoverySource):
    """Concatenates the announcements of several sources."""

    name = "composite"

    def __init__(self, sources: Sequence[DiscoverySource]) -> None:
        self.sources = tuple(sources)

    async def start(self) -> None:
        for source in self.sources:
            await source.start()

    async def stop(self) -> None:
        for source in reversed(self.sources):
            await source.stop()

    async def browse(self) -> List[DiscoveredService]:
        records: List[DiscoveredService] = []
        for source in self.sources:
            records.extend(await source.browse())
        return records


def build_discovery_source(config: Config) -> DiscoverySource:
    """Assemble the discovery sources enabled by `config`."""

    logger = get_logger("ascot.discovery")
    sources: List[DiscoverySource] = []
    if config.manual_devices:
        sources.append(StaticDiscoverySource(config.manual_devices))
    if config.discovery_enabled and not config.dry_run:
        sources.append(
            MdnsDiscoverySource(config.discovery_service_type, config.discovery_browse_timeout)
        )
    elif config.dry_run:
        logger.info("Dry-run mode; mDNS browsing disabled.")
    return CompositeDiscoverySource(sources)
