"""Retrieval of device capability manifests over HTTP."""

from __future__ import annotations

import ipaddress
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from .capabilities import DeviceData, parse_manifest
from .logging import get_logger
from .metrics import observe_manifest_request


@dataclass
class DeviceAddress:
    """A candidate address of a device; `reachable` is cleared when probing it fails."""

    address: str
    request: str
    reachable: bool = True

    def as_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "request": self.request, "reachable": self.reachable}


def manifest_url(scheme: str, address: str, port: int, path: str) -> str:
    host = address
    try:
        if ipaddress.ip_address(address).version == 6:
            host = f"[{address}]"
    except ValueError:
        pass  # hostnames are used verbatim
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{scheme}://{host}:{port}{path}"


def build_addresses(
    scheme: str, port: int, path: str, addresses: Iterable[str]
) -> List[DeviceAddress]:
    """Candidate addresses in probing order, duplicates dropped."""

    seen = set()
    results: List[DeviceAddress] = []
    for address in addresses:
        address = str(address)
        if address in seen:
            continue
        seen.add(address)
        results.append(DeviceAddress(address, manifest_url(scheme, address, port, path)))
    return results


class ManifestClient:
    """Fetches a device manifest from the first address that serves a valid one."""

    def __init__(
        self,
        timeout: float,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.logger = get_logger("ascot.manifest")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
            follow_redirects=True,
            headers={"Accept": "application/json"},
        )

    async def stop(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "ManifestClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def retrieve(self, addresses: Sequence[DeviceAddress]) -> Optional[DeviceData]:
        """Try `addresses` in order; the first valid manifest wins.

        Every address tried before the winning one is marked unreachable and
        addresses after it are never contacted. ``None`` means no address
        produced a manifest.
        """

        for address in addresses:
            data = await self._fetch(address)
            if data is not None:
                address.reachable = True
                return data
            address.reachable = False
        return None

    async def _fetch(self, address: DeviceAddress) -> Optional[DeviceData]:
        await self.start()
        assert self._client is not None
        started = time.perf_counter()
        try:
            response = await self._client.get(address.request)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            observe_manifest_request("transport_error", time.perf_counter() - started)
            self.logger.debug(
                "Manifest request failed",
                extra={"request": address.request, "error": str(exc) or type(exc).__name__},
            )
            return None

        try:
            data = parse_manifest(response.json())
        except (ValueError, ValidationError) as exc:
            observe_manifest_request("invalid", time.perf_counter() - started)
            self.logger.warning(
                "Deserialize error for address",
                extra={"request": address.request, "error": str(exc)},
            )
            return None

        observe_manifest_request("ok", time.perf_counter() - started)
        self.logger.debug(
            "Retrieved manifest",
            extra={"request": address.request, "kind": data.kind.value, "routes": len(data.routes)},
        )
        return data
