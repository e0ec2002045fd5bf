"""Typed model of a device capability manifest."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Literal, Mapping, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

# SQLite stores integers as signed 64-bit values.
U64_STORE_MAX = 2**63 - 1

U64 = Annotated[int, Field(ge=0, le=U64_STORE_MAX)]
# SQLite turns NaN into NULL, so only finite floats are accepted.
F64 = Annotated[float, Field(allow_inf_nan=False)]


class DeviceKind(str, Enum):
    """Kind of device announced in a manifest."""

    UNKNOWN = "Unknown"
    LIGHT = "Light"

    @classmethod
    def _missing_(cls, value: object) -> "DeviceKind":
        return cls.UNKNOWN


class RestKind(str, Enum):
    """HTTP verb a device route is served with."""

    GET = "Get"
    PUT = "Put"
    POST = "Post"
    DELETE = "Delete"

    @classmethod
    def _missing_(cls, value: object) -> Optional["RestKind"]:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class BoolType(_Frozen):
    """Boolean input; rendered as a checkbox."""

    kind: Literal["Bool"] = "Bool"
    default: bool = False


class RangeU64(_Frozen):
    """Unsigned integer range input; rendered as a slider."""

    kind: Literal["RangeU64"] = "RangeU64"
    min: U64 = Field(validation_alias=AliasChoices("min", "minimum"))
    max: U64 = Field(validation_alias=AliasChoices("max", "maximum"))
    step: U64 = 1
    default: U64 = 0

    @model_validator(mode="after")
    def _check_bounds(self) -> "RangeU64":
        if self.min > self.max:
            raise ValueError(f"range minimum {self.min} exceeds maximum {self.max}")
        return self


class RangeF64(_Frozen):
    """Floating point range input; rendered as a slider."""

    kind: Literal["RangeF64"] = "RangeF64"
    min: F64 = Field(validation_alias=AliasChoices("min", "minimum"))
    max: F64 = Field(validation_alias=AliasChoices("max", "maximum"))
    step: F64 = 1.0
    default: F64 = 0.0

    @model_validator(mode="after")
    def _check_bounds(self) -> "RangeF64":
        if self.min > self.max:
            raise ValueError(f"range minimum {self.min} exceeds maximum {self.max}")
        return self


InputType = Annotated[Union[BoolType, RangeU64, RangeF64], Field(discriminator="kind")]

_INPUT_KINDS = ("Bool", "RangeU64", "RangeF64")


def _untag_datatype(value: Any) -> Any:
    """Turn an externally tagged ``{"RangeU64": {...}}`` datatype into ``{"kind": ...}``."""

    if not isinstance(value, Mapping) or "kind" in value:
        return value
    if len(value) != 1:
        raise ValueError(f"datatype must have exactly one of {_INPUT_KINDS}")
    kind, body = next(iter(value.items()))
    if kind not in _INPUT_KINDS:
        raise ValueError(f"unknown input datatype {kind!r}")
    if kind == "Bool" and not isinstance(body, Mapping):
        # `{"Bool": false}` carries the default directly.
        return {"kind": kind, "default": body}
    if not isinstance(body, Mapping):
        raise ValueError(f"{kind} datatype must be an object")
    return {"kind": kind, **body}


class Input(_Frozen):
    """One named, typed input of a route."""

    name: str = Field(min_length=1)
    datatype: InputType

    @field_validator("datatype", mode="before")
    @classmethod
    def _datatype(cls, value: Any) -> Any:
        return _untag_datatype(value)


class RouteData(_Frozen):
    """Name, description and inputs of a route."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    stateless: bool = False
    inputs: Tuple[Input, ...] = ()

    @field_validator("inputs", mode="after")
    @classmethod
    def _unique_names(cls, inputs: Tuple[Input, ...]) -> Tuple[Input, ...]:
        seen = set()
        for entry in inputs:
            if entry.name in seen:
                raise ValueError(f"duplicate input name {entry.name!r}")
            seen.add(entry.name)
        return inputs


def _hazard_id(entry: Any) -> Any:
    if isinstance(entry, Mapping):
        return entry.get("id")
    return entry


class RouteConfig(_Frozen):
    """One exposed device operation with its hazards and inputs."""

    rest_kind: RestKind = RestKind.PUT
    hazards: FrozenSet[int] = frozenset()
    data: RouteData

    @field_validator("rest_kind", mode="before")
    @classmethod
    def _rest_kind(cls, value: Any) -> Any:
        return RestKind(value) if isinstance(value, str) else value

    @field_validator("hazards", mode="before")
    @classmethod
    def _hazard_ids(cls, value: Any) -> Any:
        # Hazards come either as bare ids or as catalog objects carrying an id.
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(_hazard_id(entry) for entry in value)
        return value

    @property
    def name(self) -> str:
        return self.data.name

    @property
    def inputs(self) -> Tuple[Input, ...]:
        return self.data.inputs


class DeviceData(_Frozen):
    """A device's self-described capabilities."""

    kind: DeviceKind = DeviceKind.UNKNOWN
    main_route: str = Field(min_length=1)
    routes: Tuple[RouteConfig, ...] = Field(
        default=(), validation_alias=AliasChoices("routes", "routes_configs")
    )

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, value: Any) -> Any:
        return DeviceKind(value) if isinstance(value, str) else value

    @property
    def hazards(self) -> FrozenSet[int]:
        """Every hazard id referenced by any route."""

        hazards: FrozenSet[int] = frozenset()
        for route in self.routes:
            hazards = hazards | route.hazards
        return hazards

    def as_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        for route in data["routes"]:
            route["hazards"] = sorted(route["hazards"])
        return data


def parse_manifest(payload: Any) -> DeviceData:
    """Validate a decoded manifest body; raises ``pydantic.ValidationError``."""

    return DeviceData.model_validate(payload)
