from typing import List

import pytest

from ascot_gateway.config import Config, ManualDevice
from ascot_gateway.discovery import (
    CompositeDiscoverySource,
    DiscoveredService,
    DiscoverySource,
    InvalidDiscoveryRecord,
    MdnsDiscoverySource,
    StaticDiscoverySource,
    build_discovery_source,
    decode_properties,
    service_from_info,
)


class _FakeInfo:
    def __init__(self, port, addresses, properties) -> None:
        self.port = port
        self._addresses = addresses
        self.properties = properties

    def parsed_addresses(self) -> List[str]:
        return list(self._addresses)


class _RecordingSource(DiscoverySource):
    def __init__(self, name: str, records: List[DiscoveredService], log: List[str]) -> None:
        self.name = name
        self.records = records
        self.log = log

    async def start(self) -> None:
        self.log.append(f"start:{self.name}")

    async def stop(self) -> None:
        self.log.append(f"stop:{self.name}")

    async def browse(self) -> List[DiscoveredService]:
        return list(self.records)


def test_decode_properties_handles_bytes_and_empty_values() -> None:
    decoded = decode_properties({b"scheme": b"https", b"flag": None, "path": "/caps"})
    assert decoded == {"scheme": "https", "flag": "", "path": "/caps"}


def test_service_from_info_uses_txt_overrides() -> None:
    info = _FakeInfo(3000, ["192.168.1.4", "fe80::2"], {b"scheme": b"https", b"path": b"/caps", b"id": b"lamp"})

    record = service_from_info(info)  # type: ignore[arg-type]

    assert record.port == 3000
    assert list(record.addresses) == ["192.168.1.4", "fe80::2"]
    assert (record.scheme, record.path) == ("https", "/caps")
    assert record.properties["id"] == "lamp"


def test_service_from_info_without_overrides() -> None:
    record = service_from_info(_FakeInfo(80, ["10.0.0.1"], {}))  # type: ignore[arg-type]
    assert record.scheme is None
    assert record.path is None


@pytest.mark.parametrize(
    "record",
    [
        DiscoveredService(port=3000, addresses=()),
        DiscoveredService(port=0, addresses=("10.0.0.1",)),
        DiscoveredService(port=70000, addresses=("10.0.0.1",)),
    ],
)
def test_invalid_records_rejected(record: DiscoveredService) -> None:
    with pytest.raises(InvalidDiscoveryRecord):
        record.validate()


@pytest.mark.asyncio
async def test_static_source_yields_manual_devices() -> None:
    source = StaticDiscoverySource(
        [ManualDevice(port=3000, addresses=("10.0.0.1",), path="/m", properties={"room": "hall"})]
    )

    (record,) = await source.browse()

    assert record.port == 3000
    assert record.path == "/m"
    assert record.scheme is None
    assert record.properties == {"room": "hall"}


@pytest.mark.asyncio
async def test_composite_source_concatenates_and_manages_lifecycle() -> None:
    log: List[str] = []
    first = _RecordingSource("a", [DiscoveredService(port=1, addresses=("10.0.0.1",))], log)
    second = _RecordingSource("b", [DiscoveredService(port=2, addresses=("10.0.0.2",))], log)
    source = CompositeDiscoverySource([first, second])

    await source.start()
    records = await source.browse()
    await source.stop()

    assert [record.port for record in records] == [1, 2]
    assert log == ["start:a", "start:b", "stop:b", "stop:a"]


def test_build_discovery_source_respects_dry_run(tmp_path) -> None:
    manual = (ManualDevice(port=3000, addresses=("10.0.0.1",)),)
    source = build_discovery_source(Config(db_path=tmp_path / "db.sqlite3", manual_devices=manual, dry_run=True))

    assert isinstance(source, CompositeDiscoverySource)
    assert [type(child) for child in source.sources] == [StaticDiscoverySource]


def test_build_discovery_source_includes_mdns(tmp_path) -> None:
    source = build_discovery_source(Config(db_path=tmp_path / "db.sqlite3", discovery_browse_timeout=2.5))

    assert isinstance(source, CompositeDiscoverySource)
    (mdns,) = source.sources
    assert isinstance(mdns, MdnsDiscoverySource)
    assert mdns.service_type == "_ascot._tcp.local."
    assert mdns.browse_timeout == 2.5
