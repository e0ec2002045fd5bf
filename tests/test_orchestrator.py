import logging
import sqlite3
from typing import List

import httpx
import pytest

from ascot_gateway.config import Config, ManualDevice
from ascot_gateway.db import apply_migrations
from ascot_gateway.devices import DeviceStore
from ascot_gateway.discovery import DiscoveredService, StaticDiscoverySource
from ascot_gateway.manifest import ManifestClient
from ascot_gateway.orchestrator import DiscoveryOrchestrator, PassError


LIGHT_MANIFEST = {
    "kind": "Light",
    "main_route": "/light",
    "routes": [
        {
            "rest_kind": "Put",
            "hazards": [{"id": 2}, {"id": 1}],
            "data": {
                "name": "/on/<b>/<s>",
                "description": "Turn light on",
                "stateless": False,
                "inputs": [
                    {"name": "brightness", "datatype": {"RangeF64": {"min": 0.0, "max": 20.0, "step": 0.1, "default": 0.0}}},
                    {"name": "save-energy", "datatype": {"Bool": False}},
                ],
            },
        },
        {"rest_kind": "Put", "hazards": [], "data": {"name": "/off", "description": "Turn light off", "inputs": []}},
    ],
}


class _Devices:
    """Mock HTTP side: hosts serving LIGHT_MANIFEST, everything else refused."""

    def __init__(self, serving: List[str]) -> None:
        self.serving = set(serving)
        self.requests: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if request.url.host in self.serving:
            return httpx.Response(200, json=LIGHT_MANIFEST)
        raise httpx.ConnectError("refused", request=request)


async def _orchestrator(tmp_path, devices: _Devices, manual=()) -> DiscoveryOrchestrator:
    db_path = tmp_path / "gateway.sqlite3"
    apply_migrations(db_path)
    config = Config(db_path=db_path, manual_devices=tuple(manual), discovery_enabled=False)
    store = DeviceStore(db_path)
    await store.start()
    client = ManifestClient(1.0, transport=httpx.MockTransport(devices))
    orchestrator = DiscoveryOrchestrator(config, store, StaticDiscoverySource(config.manual_devices), client)
    await orchestrator.start()
    return orchestrator


async def _close(orchestrator: DiscoveryOrchestrator) -> None:
    await orchestrator.stop()
    await orchestrator.store.stop()


@pytest.mark.asyncio
async def test_light_device_end_to_end(tmp_path) -> None:
    devices = _Devices(["10.0.0.2"])
    orchestrator = await _orchestrator(tmp_path, devices)
    try:
        result = await orchestrator.run_pass(
            [DiscoveredService(port=3000, addresses=("10.0.0.1", "10.0.0.2"), properties={"id": "lamp"})]
        )

        (entry,) = result.devices
        assert [button.label for button in entry.controls.buttons] == ["on", "off"]
        assert [slider.name for slider in entry.controls.sliders_f64] == ["brightness"]
        assert entry.controls.sliders_u64 == []
        assert [(box.name, box.checked) for box in entry.controls.checkboxes] == [("save-energy", False)]
        assert [address.reachable for address in entry.addresses] == [False, True]
        assert entry.metadata.scheme == "http"
        assert entry.metadata.path == "/.well-known/ascot"
        assert result.hazards == [1, 2]
        assert devices.requests[0] == "http://10.0.0.1:3000/.well-known/ascot"

        store = orchestrator.store
        routes = {route.route: route.id for route in await store.routes(entry.metadata.id)}
        assert [row.name for row in await store.booleans(routes["/off"])] == ["/off"]
        assert "/on/<b>/<s>" in [row.name for row in await store.booleans(routes["/on/<b>/<s>"])]
        assert orchestrator.last_result is result

        payload = result.as_dict()
        assert payload["devices"][0]["metadata"]["port"] == 3000
        assert payload["devices"][0]["properties"] == {"id": "lamp"}
        assert len(payload["devices"][0]["buttons"]) == 2
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_empty_batch_leaves_store_untouched(tmp_path) -> None:
    orchestrator = await _orchestrator(tmp_path, _Devices(["10.0.0.1"]))
    try:
        first = await orchestrator.run_pass([DiscoveredService(port=3000, addresses=("10.0.0.1",))])
        db_path = orchestrator.config.db_path
        stats_before = dict(await orchestrator.store.stats())
        bytes_before = db_path.read_bytes()

        result = await orchestrator.run_pass([])

        assert result.devices == []
        assert db_path.read_bytes() == bytes_before
        assert dict(await orchestrator.store.stats()) == stats_before
        assert orchestrator.last_result is first
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_unreachable_device_dropped_from_store(tmp_path) -> None:
    orchestrator = await _orchestrator(tmp_path, _Devices(["10.0.0.1"]))
    try:
        result = await orchestrator.run_pass(
            [
                DiscoveredService(port=3000, addresses=("10.0.0.1",)),
                DiscoveredService(port=3001, addresses=("10.0.0.9", "10.0.0.8")),
            ]
        )

        assert [entry.metadata.port for entry in result.devices] == [3000]
        assert result.unreachable == 1
        assert [device.port for device in await orchestrator.store.devices()] == [3000]
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_invalid_records_skipped(tmp_path) -> None:
    orchestrator = await _orchestrator(tmp_path, _Devices(["10.0.0.1"]))
    try:
        result = await orchestrator.run_pass(
            [
                DiscoveredService(port=3000, addresses=()),
                DiscoveredService(port=0, addresses=("10.0.0.1",)),
                DiscoveredService(port=3000, addresses=("10.0.0.1",)),
            ]
        )

        assert result.skipped == 2
        assert len(result.devices) == 1
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_only_invalid_records_count_as_empty_batch(tmp_path) -> None:
    orchestrator = await _orchestrator(tmp_path, _Devices(["10.0.0.1"]))
    try:
        await orchestrator.run_pass([DiscoveredService(port=3000, addresses=("10.0.0.1",))])

        result = await orchestrator.run_pass([DiscoveredService(port=3000, addresses=())])

        assert result.skipped == 1
        assert len(await orchestrator.store.devices()) == 1
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_passes_rebuild_instead_of_accumulating(tmp_path) -> None:
    orchestrator = await _orchestrator(tmp_path, _Devices(["10.0.0.1"]))
    try:
        record = DiscoveredService(port=3000, addresses=("10.0.0.1",))
        await orchestrator.run_pass([record])
        await orchestrator.run_pass([record])

        stats = await orchestrator.store.stats()
        assert stats["devices"] == 1
        assert stats["routes"] == 2
        assert stats["booleans"] == 3
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_pass_uses_source_when_no_records_given(tmp_path) -> None:
    manual = [ManualDevice(port=4000, addresses=("10.0.0.1",), scheme="https", path="/caps")]
    devices = _Devices(["10.0.0.1"])
    orchestrator = await _orchestrator(tmp_path, devices, manual=manual)
    try:
        result = await orchestrator.run_pass()

        (entry,) = result.devices
        assert (entry.metadata.scheme, entry.metadata.path) == ("https", "/caps")
        assert devices.requests == ["https://10.0.0.1:4000/caps"]
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_clear_failure_rolls_back_pass(tmp_path) -> None:
    orchestrator = await _orchestrator(tmp_path, _Devices(["10.0.0.1"]))
    store = orchestrator.store
    try:
        first = await orchestrator.run_pass([DiscoveredService(port=3000, addresses=("10.0.0.1",))])

        def _broken_clear(conn):
            conn.execute("DELETE FROM booleans")
            raise sqlite3.OperationalError("disk I/O error")

        store._clear_all = _broken_clear  # type: ignore[method-assign]
        with pytest.raises(PassError):
            await orchestrator.run_pass([DiscoveredService(port=3001, addresses=("10.0.0.1",))])

        assert [device.port for device in await store.devices()] == [3000]
        assert (await store.stats())["booleans"] == 3
        assert orchestrator.last_result is first
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_malformed_request_path_does_not_abort_pass(tmp_path) -> None:
    devices = _Devices(["10.0.0.1", "10.0.0.3"])
    orchestrator = await _orchestrator(tmp_path, devices)
    try:
        result = await orchestrator.run_pass(
            [
                DiscoveredService(port=3000, addresses=("10.0.0.1",), path="/m\x00"),
                DiscoveredService(port=3001, addresses=("10.0.0.3",)),
            ]
        )

        assert [entry.metadata.port for entry in result.devices] == [3001]
        assert result.unreachable == 1
        assert [device.port for device in await orchestrator.store.devices()] == [3001]
        assert devices.requests == ["http://10.0.0.3:3001/.well-known/ascot"]
    finally:
        await _close(orchestrator)


@pytest.mark.asyncio
async def test_unexpected_client_error_isolated_to_one_device(tmp_path, caplog) -> None:
    class _Exploding(_Devices):
        def __call__(self, request: httpx.Request) -> httpx.Response:
            if request.url.host == "10.0.0.1":
                raise RuntimeError("handler crashed")
            return super().__call__(request)

    caplog.set_level(logging.ERROR, logger="ascot.orchestrator")
    orchestrator = await _orchestrator(tmp_path, _Exploding(["10.0.0.3"]))
    try:
        result = await orchestrator.run_pass(
            [
                DiscoveredService(port=3000, addresses=("10.0.0.1",)),
                DiscoveredService(port=3001, addresses=("10.0.0.3",)),
            ]
        )

        assert [entry.metadata.port for entry in result.devices] == [3001]
        assert result.unreachable == 1
        assert result.failed == 0
        assert [device.port for device in await orchestrator.store.devices()] == [3001]
        assert orchestrator.last_result is result
        assert any(record.getMessage() == "Fetching device manifest failed" for record in caplog.records)
    finally:
        await _close(orchestrator)
