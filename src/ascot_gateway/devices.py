"""Device persistence helpers."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .capabilities import BoolType, DeviceData, RangeF64, RangeU64, RouteConfig
from .controls import StateControls
from .db import DEVICE_TABLES, DatabaseManager, savepoint, transaction
from .logging import get_logger
from .manifest import DeviceAddress


@dataclass(frozen=True)
class DeviceMetadata:
    """Store identifier plus where the device serves its manifest."""

    id: int
    port: int
    scheme: str
    path: str


@dataclass
class ProbedDevice:
    """A discovered device after manifest retrieval, ready to be persisted."""

    port: int
    scheme: str
    path: str
    addresses: List[DeviceAddress]
    properties: Mapping[str, str] = field(default_factory=dict)
    data: Optional[DeviceData] = None


@dataclass
class DeviceEntry:
    """A persisted device with its synthesized controls."""

    metadata: DeviceMetadata
    addresses: List[DeviceAddress]
    properties: Mapping[str, str]
    data: DeviceData
    controls: StateControls

    def as_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "id": self.metadata.id,
                "port": self.metadata.port,
                "scheme": self.metadata.scheme,
                "path": self.metadata.path,
            },
            "addresses": [address.as_dict() for address in self.addresses],
            "properties": dict(self.properties),
            "capabilities": self.data.as_dict(),
            **self.controls.as_dict(),
        }


@dataclass
class PassWrite:
    """Outcome of writing one discovery pass."""

    devices: List[DeviceEntry] = field(default_factory=list)
    unreachable: int = 0
    failed: int = 0


@dataclass(frozen=True)
class BooleanRow:
    route_id: int
    name: str
    default: bool
    value: bool


@dataclass(frozen=True)
class RangeRow:
    """A stored u64 or f64 range input; `value` starts at `default`."""

    route_id: int
    name: str
    min: Union[int, float]
    max: Union[int, float]
    step: Union[int, float]
    default: Union[int, float]
    value: Union[int, float]


@dataclass(frozen=True)
class RouteRow:
    id: int
    device_id: int
    route: str


@dataclass(frozen=True)
class DeviceRow:
    """Full device row for API exposure."""

    id: int
    port: int
    scheme: str
    path: str
    main_route: Optional[str]
    addresses: List[str]
    properties: Dict[str, str]


def _range_row(route_id: int, name: str, datatype: Union[RangeU64, RangeF64]) -> RangeRow:
    return RangeRow(
        route_id=route_id,
        name=name,
        min=datatype.min,
        max=datatype.max,
        step=datatype.step,
        default=datatype.default,
        value=datatype.default,
    )


class DeviceStore:
    """SQLite-backed persistence for device capabilities."""

    def __init__(self, db_path: Path) -> None:
        self.db = DatabaseManager(db_path)
        self.logger = get_logger("ascot.devices")

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        await self.db.close()

    # Writes

    async def insert_device(self, port: int, scheme: str, path: str) -> int:
        return await self.db.run(lambda conn: self._insert_device(conn, port, scheme, path))

    def _insert_device(self, conn: sqlite3.Connection, port: int, scheme: str, path: str) -> int:
        cursor = conn.execute(
            "INSERT INTO devices (port, scheme, path) VALUES (?, ?, ?)",
            (port, scheme, path),
        )
        return int(cursor.lastrowid)

    async def insert_address(self, device_id: int, address: str) -> None:
        await self.db.run(lambda conn: self._insert_address(conn, device_id, address))

    def _insert_address(self, conn: sqlite3.Connection, device_id: int, address: str) -> None:
        conn.execute(
            "INSERT INTO addresses (device_id, address) VALUES (?, ?)",
            (device_id, address),
        )

    async def insert_property(self, device_id: int, key: str, value: str) -> None:
        await self.db.run(lambda conn: self._insert_property(conn, device_id, key, value))

    def _insert_property(
        self, conn: sqlite3.Connection, device_id: int, key: str, value: str
    ) -> None:
        conn.execute(
            "INSERT INTO properties (device_id, key, value) VALUES (?, ?, ?)",
            (device_id, key, value),
        )

    async def insert_hazard(self, device_id: int, hazard_id: int) -> None:
        await self.db.run(lambda conn: self._insert_hazard(conn, device_id, hazard_id))

    def _insert_hazard(self, conn: sqlite3.Connection, device_id: int, hazard_id: int) -> None:
        conn.execute(
            "INSERT INTO hazards (device_id, hazard_id) VALUES (?, ?)",
            (device_id, hazard_id),
        )

    async def insert_main_route(self, device_id: int, route: str) -> None:
        await self.db.run(lambda conn: self._insert_main_route(conn, device_id, route))

    def _insert_main_route(self, conn: sqlite3.Connection, device_id: int, route: str) -> None:
        conn.execute(
            "INSERT INTO main_routes (device_id, route) VALUES (?, ?)",
            (device_id, route),
        )

    async def insert_route(self, device_id: int, route: str) -> int:
        return await self.db.run(lambda conn: self._insert_route(conn, device_id, route))

    def _insert_route(self, conn: sqlite3.Connection, device_id: int, route: str) -> int:
        cursor = conn.execute(
            "INSERT INTO routes (device_id, route) VALUES (?, ?)",
            (device_id, route),
        )
        return int(cursor.lastrowid)

    async def insert_boolean_input(
        self, route_id: int, name: str, default: bool, value: bool
    ) -> None:
        await self.db.run(
            lambda conn: self._insert_boolean_input(conn, route_id, name, default, value)
        )

    def _insert_boolean_input(
        self, conn: sqlite3.Connection, route_id: int, name: str, default: bool, value: bool
    ) -> None:
        conn.execute(
            'INSERT INTO booleans (route_id, name, "default", value) VALUES (?, ?, ?, ?)',
            (route_id, name, int(default), int(value)),
        )

    async def insert_rangeu64_input(self, route_id: int, row: RangeRow) -> None:
        await self.db.run(lambda conn: self._insert_range(conn, "rangesu64", route_id, row))

    async def insert_rangef64_input(self, route_id: int, row: RangeRow) -> None:
        await self.db.run(lambda conn: self._insert_range(conn, "rangesf64", route_id, row))

    def _insert_range(
        self, conn: sqlite3.Connection, table: str, route_id: int, row: RangeRow
    ) -> None:
        conn.execute(
            f"""
            INSERT INTO {table} (route_id, name, min, max, step, "default", value)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (route_id, row.name, row.min, row.max, row.step, row.default, row.value),
        )

    async def insert_route_config(
        self, device_id: int, route: RouteConfig, controls: Optional[StateControls] = None
    ) -> int:
        return await self.db.run(
            lambda conn: self._insert_route_config(conn, device_id, route, controls)
        )

    def _insert_route_config(
        self,
        conn: sqlite3.Connection,
        device_id: int,
        route: RouteConfig,
        controls: Optional[StateControls] = None,
    ) -> int:
        route_id = self._insert_route(conn, device_id, route.name)
        for hazard_id in sorted(route.hazards):
            self._insert_hazard(conn, device_id, hazard_id)

        # The route itself is stored as a boolean trigger, once, whether or not
        # it declares inputs.
        self._insert_boolean_input(conn, route_id, route.name, False, False)

        for entry in route.inputs:
            datatype = entry.datatype
            if isinstance(datatype, BoolType):
                self._insert_boolean_input(
                    conn, route_id, entry.name, datatype.default, datatype.default
                )
            elif isinstance(datatype, RangeU64):
                self._insert_range(
                    conn, "rangesu64", route_id, _range_row(route_id, entry.name, datatype)
                )
            elif isinstance(datatype, RangeF64):
                self._insert_range(
                    conn, "rangesf64", route_id, _range_row(route_id, entry.name, datatype)
                )
            else:  # pragma: no cover - the datatype union is closed
                raise TypeError(f"unsupported input datatype {type(datatype).__name__}")

        if controls is not None:
            controls.add_route(route_id, route)
        return route_id

    def _insert_device_data(
        self, conn: sqlite3.Connection, device_id: int, data: DeviceData
    ) -> StateControls:
        controls = StateControls()
        self._insert_main_route(conn, device_id, data.main_route)
        for route in data.routes:
            self._insert_route_config(conn, device_id, route, controls)
        return controls

    async def clear_all(self) -> None:
        await self.db.run(self._clear_all)

    def _clear_all(self, conn: sqlite3.Connection) -> None:
        for table in DEVICE_TABLES:
            conn.execute(f"DELETE FROM {table}")
        self.logger.debug("Cleared device tables")

    async def delete_device(self, device_id: int) -> bool:
        return await self.db.run(lambda conn: self._delete_device(conn, device_id))

    def _delete_device(self, conn: sqlite3.Connection, device_id: int) -> bool:
        route_ids = "SELECT id FROM routes WHERE device_id = ?"
        for table in ("booleans", "rangesu64", "rangesf64"):
            conn.execute(f"DELETE FROM {table} WHERE route_id IN ({route_ids})", (device_id,))
        for table in ("routes", "main_routes", "hazards", "properties", "addresses"):
            conn.execute(f"DELETE FROM {table} WHERE device_id = ?", (device_id,))
        cursor = conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        return cursor.rowcount > 0

    async def apply_pass(self, probed: Sequence[ProbedDevice]) -> PassWrite:
        """Replace the stored devices with `probed` in a single transaction."""

        return await self.db.run(lambda conn: self._apply_pass(conn, probed))

    def _apply_pass(self, conn: sqlite3.Connection, probed: Sequence[ProbedDevice]) -> PassWrite:
        result = PassWrite()
        with transaction(conn):
            self._clear_all(conn)
            for device in probed:
                try:
                    with savepoint(conn, "device"):
                        entry = self._write_device(conn, device)
                except sqlite3.Error:
                    result.failed += 1
                    self.logger.exception(
                        "Failed to persist device",
                        extra={"port": device.port, "scheme": device.scheme, "path": device.path},
                    )
                    continue
                if entry is None:
                    result.unreachable += 1
                else:
                    result.devices.append(entry)
        return result

    def _write_device(
        self, conn: sqlite3.Connection, device: ProbedDevice
    ) -> Optional[DeviceEntry]:
        device_id = self._insert_device(conn, device.port, device.scheme, device.path)
        for address in device.addresses:
            self._insert_address(conn, device_id, address.address)
        for key, value in device.properties.items():
            self._insert_property(conn, device_id, key, value)

        if device.data is None:
            self._delete_device(conn, device_id)
            self.logger.info(
                "Dropped unreachable device",
                extra={"addresses": [address.address for address in device.addresses]},
            )
            return None

        controls = self._insert_device_data(conn, device_id, device.data)
        return DeviceEntry(
            metadata=DeviceMetadata(
                id=device_id, port=device.port, scheme=device.scheme, path=device.path
            ),
            addresses=device.addresses,
            properties=device.properties,
            data=device.data,
            controls=controls,
        )

    # Reads

    async def devices(self) -> List[DeviceRow]:
        return await self.db.run(self._devices)

    def _devices(self, conn: sqlite3.Connection) -> List[DeviceRow]:
        rows = conn.execute(
            """
            SELECT d.id, d.port, d.scheme, d.path, m.route AS main_route
            FROM devices d
            LEFT JOIN main_routes m ON m.device_id = d.id
            ORDER BY d.id
            """
        ).fetchall()
        results: List[DeviceRow] = []
        for row in rows:
            addresses = conn.execute(
                "SELECT address FROM addresses WHERE device_id = ? ORDER BY id",
                (row["id"],),
            ).fetchall()
            properties = conn.execute(
                "SELECT key, value FROM properties WHERE device_id = ? ORDER BY id",
                (row["id"],),
            ).fetchall()
            results.append(
                DeviceRow(
                    id=int(row["id"]),
                    port=int(row["port"]),
                    scheme=row["scheme"],
                    path=row["path"],
                    main_route=row["main_route"],
                    addresses=[entry["address"] for entry in addresses],
                    properties={entry["key"]: entry["value"] for entry in properties},
                )
            )
        return results

    async def routes(self, device_id: int) -> List[RouteRow]:
        return await self.db.run(lambda conn: self._routes(conn, device_id))

    def _routes(self, conn: sqlite3.Connection, device_id: int) -> List[RouteRow]:
        rows = conn.execute(
            "SELECT id, device_id, route FROM routes WHERE device_id = ? ORDER BY id",
            (device_id,),
        ).fetchall()
        return [RouteRow(id=int(r["id"]), device_id=int(r["device_id"]), route=r["route"]) for r in rows]

    async def booleans(self, route_id: int) -> List[BooleanRow]:
        return await self.db.run(lambda conn: self._booleans(conn, route_id))

    def _booleans(self, conn: sqlite3.Connection, route_id: int) -> List[BooleanRow]:
        rows = conn.execute(
            'SELECT route_id, name, "default", value FROM booleans WHERE route_id = ? ORDER BY id',
            (route_id,),
        ).fetchall()
        return [
            BooleanRow(
                route_id=int(row["route_id"]),
                name=row["name"],
                default=bool(row["default"]),
                value=bool(row["value"]),
            )
            for row in rows
        ]

    async def ranges_u64(self, route_id: int) -> List[RangeRow]:
        return await self.db.run(lambda conn: self._ranges(conn, "rangesu64", route_id))

    async def ranges_f64(self, route_id: int) -> List[RangeRow]:
        return await self.db.run(lambda conn: self._ranges(conn, "rangesf64", route_id))

    def _ranges(self, conn: sqlite3.Connection, table: str, route_id: int) -> List[RangeRow]:
        rows = conn.execute(
            f"""
            SELECT route_id, name, min, max, step, "default", value
            FROM {table}
            WHERE route_id = ?
            ORDER BY id
            """,
            (route_id,),
        ).fetchall()
        return [
            RangeRow(
                route_id=int(row["route_id"]),
                name=row["name"],
                min=row["min"],
                max=row["max"],
                step=row["step"],
                default=row["default"],
                value=row["value"],
            )
            for row in rows
        ]

    async def hazards(self) -> List[int]:
        return await self.db.run(self._hazards)

    def _hazards(self, conn: sqlite3.Connection) -> List[int]:
        rows = conn.execute("SELECT DISTINCT hazard_id FROM hazards ORDER BY hazard_id").fetchall()
        return [int(row["hazard_id"]) for row in rows]

    async def stats(self) -> Mapping[str, int]:
        return await self.db.run(self._stats)

    def _stats(self, conn: sqlite3.Connection) -> Mapping[str, int]:
        return {
            table: int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
            for table in DEVICE_TABLES
        }
