"""UI control descriptors derived from device routes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from .capabilities import BoolType, RangeF64, RangeU64, RouteConfig

UNKNOWN_ROUTE = "<unknown route>"

N = TypeVar("N", int, float)


def clean_route_name(name: str) -> str:
    """Label for a route: its first path segment, e.g. ``/on/<b>`` -> ``on``."""

    if not name.startswith("/"):
        return UNKNOWN_ROUTE
    return name[1:].split("/", 1)[0]


@dataclass(frozen=True)
class Button:
    route_id: int
    label: str
    has_state: bool = False


@dataclass(frozen=True)
class CheckBox:
    route_id: Optional[int]
    name: str
    checked: bool = False


@dataclass(frozen=True)
class Slider(Generic[N]):
    route_id: Optional[int]
    name: str
    min: N
    max: N
    step: N
    value: N


@dataclass
class StateControls:
    """Controls of one device, grouped by widget type."""

    buttons: List[Button] = field(default_factory=list)
    checkboxes: List[CheckBox] = field(default_factory=list)
    sliders_u64: List[Slider[int]] = field(default_factory=list)
    sliders_f64: List[Slider[float]] = field(default_factory=list)

    def add_route(self, route_id: int, route: RouteConfig) -> None:
        """Append one button for the route and one control per declared input."""

        self.buttons.append(Button(route_id=route_id, label=clean_route_name(route.name)))
        for entry in route.inputs:
            datatype = entry.datatype
            if isinstance(datatype, BoolType):
                self.checkboxes.append(
                    CheckBox(route_id=route_id, name=entry.name, checked=datatype.default)
                )
            elif isinstance(datatype, RangeU64):
                self.sliders_u64.append(
                    Slider(
                        route_id=route_id,
                        name=entry.name,
                        min=datatype.min,
                        max=datatype.max,
                        step=datatype.step,
                        value=datatype.default,
                    )
                )
            elif isinstance(datatype, RangeF64):
                self.sliders_f64.append(
                    Slider(
                        route_id=route_id,
                        name=entry.name,
                        min=datatype.min,
                        max=datatype.max,
                        step=datatype.step,
                        value=datatype.default,
                    )
                )
            else:  # pragma: no cover - the datatype union is closed
                raise TypeError(f"unsupported input datatype {type(datatype).__name__}")

    def input_controls(self) -> int:
        return len(self.checkboxes) + len(self.sliders_u64) + len(self.sliders_f64)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "buttons": [asdict(button) for button in self.buttons],
            "checkboxes": [asdict(checkbox) for checkbox in self.checkboxes],
            "sliders_u64": [asdict(slider) for slider in self.sliders_u64],
            "sliders_f64": [asdict(slider) for slider in self.sliders_f64],
        }


def synthesize_controls(routes: Iterable[Tuple[int, RouteConfig]]) -> StateControls:
    """Controls for already persisted ``(route_id, route)`` pairs."""

    controls = StateControls()
    for route_id, route in routes:
        controls.add_route(route_id, route)
    return controls
