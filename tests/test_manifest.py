from typing import List

import httpx
import pytest

from ascot_gateway.manifest import ManifestClient, build_addresses, manifest_url


MANIFEST = {
    "kind": "Light",
    "main_route": "/light",
    "routes": [{"rest_kind": "Put", "hazards": [3], "data": {"name": "/off", "inputs": []}}],
}


def test_manifest_url_brackets_ipv6() -> None:
    assert manifest_url("http", "fe80::1", 3000, "/.well-known/ascot") == "http://[fe80::1]:3000/.well-known/ascot"
    assert manifest_url("https", "10.0.0.5", 443, "manifest") == "https://10.0.0.5:443/manifest"
    assert manifest_url("http", "light.local", 80, "/") == "http://light.local:80/"


def test_build_addresses_drops_duplicates() -> None:
    addresses = build_addresses("http", 3000, "/m", ["10.0.0.1", "10.0.0.2", "10.0.0.1"])

    assert [address.address for address in addresses] == ["10.0.0.1", "10.0.0.2"]
    assert addresses[1].request == "http://10.0.0.2:3000/m"
    assert all(address.reachable for address in addresses)


@pytest.mark.asyncio
async def test_first_valid_manifest_wins_and_later_addresses_untried() -> None:
    contacted: List[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        contacted.append(request.url.host)
        if request.url.host == "10.0.0.1":
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(200, json=MANIFEST)

    addresses = build_addresses("http", 3000, "/.well-known/ascot", ["10.0.0.1", "10.0.0.2", "10.0.0.3"])
    async with ManifestClient(1.0, transport=httpx.MockTransport(_handler)) as client:
        data = await client.retrieve(addresses)

    assert data is not None
    assert data.main_route == "/light"
    assert contacted == ["10.0.0.1", "10.0.0.2"]
    assert [address.reachable for address in addresses] == [False, True, True]


@pytest.mark.asyncio
async def test_invalid_manifest_treated_as_unreachable() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "10.0.0.1":
            return httpx.Response(200, json={"kind": "Light"})
        if request.url.host == "10.0.0.2":
            return httpx.Response(200, content=b"not json")
        return httpx.Response(404)

    addresses = build_addresses("http", 3000, "/m", ["10.0.0.1", "10.0.0.2", "10.0.0.3"])
    client = ManifestClient(1.0, transport=httpx.MockTransport(_handler))
    try:
        data = await client.retrieve(addresses)
    finally:
        await client.stop()

    assert data is None
    assert [address.reachable for address in addresses] == [False, False, False]


@pytest.mark.asyncio
async def test_timeout_marks_address_unreachable() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "10.0.0.1":
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json=MANIFEST)

    addresses = build_addresses("http", 3000, "/m", ["10.0.0.1", "10.0.0.2"])
    async with ManifestClient(0.5, transport=httpx.MockTransport(_handler)) as client:
        data = await client.retrieve(addresses)

    assert data is not None
    assert data.hazards == frozenset({3})
    assert addresses[0].reachable is False


@pytest.mark.asyncio
async def test_malformed_address_skipped_for_next() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "10.0.0.2":
            return httpx.Response(200, json=MANIFEST)
        return httpx.Response(404)

    addresses = build_addresses("http", 3000, "/m", ["::zz", "10.0.0.2"])
    async with ManifestClient(1.0, transport=httpx.MockTransport(_handler)) as client:
        data = await client.retrieve(addresses)

    assert data is not None
    assert data.main_route == "/light"
    assert [address.reachable for address in addresses] == [False, True]


@pytest.mark.asyncio
async def test_non_finite_range_rejected_for_next_address() -> None:
    body = (
        b'{"main_route": "/light", "routes": [{"data": {"name": "/dim", "inputs": '
        b'[{"name": "level", "datatype": {"RangeF64": {"min": 0, "max": Infinity}}}]}}]}'
    )

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "10.0.0.1":
            return httpx.Response(200, content=body, headers={"content-type": "application/json"})
        return httpx.Response(200, json=MANIFEST)

    addresses = build_addresses("http", 3000, "/m", ["10.0.0.1", "10.0.0.2"])
    async with ManifestClient(1.0, transport=httpx.MockTransport(_handler)) as client:
        data = await client.retrieve(addresses)

    assert data is not None
    assert data.main_route == "/light"
    assert [address.reachable for address in addresses] == [False, True]
