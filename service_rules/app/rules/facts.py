"""
Fact path access and the working-set arena used during one execution.

Paths use dots for object members and brackets for arrays: ``a.b.c``,
``items[0].sku`` (one element) and ``items[].sku`` (every element).
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

_SEGMENT_RE = re.compile(r"^([^\[\]]+)(?:\[(\d*)\])?$")

WILDCARD = "*"


class _Missing:
    """Marker for a path that is absent from a fact."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class Projection(list):
    """Values collected through a ``[]`` path segment."""


class PathError(KeyError):
    """A path cannot be parsed or written."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "invalid path"


@dataclass(frozen=True)
class PathSegment:
    name: str
    index: Optional[Union[int, str]] = None


def parse_path(path: str) -> Tuple[PathSegment, ...]:
    """Split a path into segments; raises PathError on malformed input."""
    if not path or not isinstance(path, str):
        raise PathError(f"Invalid path: {path!r}")

    segments = []
    for part in path.split("."):
        match = _SEGMENT_RE.match(part.strip())
        if not match:
            raise PathError(f"Invalid path segment '{part}' in '{path}'")
        name, index = match.group(1), match.group(2)
        if index is None:
            segments.append(PathSegment(name))
        elif index == "":
            segments.append(PathSegment(name, WILDCARD))
        else:
            segments.append(PathSegment(name, int(index)))
    return tuple(segments)


def strip_type_prefix(path: str, type_name: Optional[str]) -> str:
    """Drop a leading schema name, e.g. ``Order.amount`` -> ``amount``."""
    if not type_name or not path:
        return path
    prefix = type_name + "."
    if path[:len(prefix)].lower() == prefix.lower():
        return path[len(prefix):]
    return path


def is_projection_path(path: str) -> bool:
    return any(segment.index == WILDCARD for segment in parse_path(path))


def get_value(data: Any, path: str) -> Any:
    """Resolve a path against a fact; MISSING when absent, Projection for ``[]``."""
    try:
        segments = parse_path(path)
    except PathError:
        return MISSING
    return _walk(data, segments)


def _walk(current: Any, segments: Tuple[PathSegment, ...]) -> Any:
    for position, segment in enumerate(segments):
        if not isinstance(current, dict) or segment.name not in current:
            return MISSING
        current = current[segment.name]

        if segment.index is None:
            continue
        if not isinstance(current, list):
            return MISSING
        if segment.index == WILDCARD:
            rest = segments[position + 1:]
            values = Projection()
            for element in current:
                value = _walk(element, rest) if rest else element
                if isinstance(value, Projection):
                    values.extend(value)
                elif value is not MISSING:
                    values.append(value)
            return values
        if segment.index >= len(current):
            return MISSING
        current = current[segment.index]
    return current


def set_value(data: Dict[str, Any], path: str, value: Any) -> None:
    """Write to an existing fact shape; intermediate containers must exist."""
    segments = parse_path(path)
    current: Any = data

    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        if segment.index == WILDCARD:
            raise PathError(f"Cannot write through '[]' in '{path}'")
        if not isinstance(current, dict):
            raise PathError(f"'{path}': parent of '{segment.name}' is not an object")

        if segment.index is None:
            if last:
                current[segment.name] = value
                return
            if segment.name not in current or not isinstance(current[segment.name], (dict, list)):
                raise PathError(f"'{path}': '{segment.name}' does not exist on the fact")
            current = current[segment.name]
            continue

        container = current.get(segment.name)
        if not isinstance(container, list) or segment.index >= len(container):
            raise PathError(f"'{path}': element {segment.index} of '{segment.name}' does not exist")
        if last:
            container[segment.index] = value
            return
        current = container[segment.index]


def build_nested(data: Dict[str, Any], path: str, value: Any) -> None:
    """Write a value, creating intermediate objects and array elements."""
    segments = parse_path(path)
    current = data

    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        if segment.index is None:
            if last:
                current[segment.name] = value
                return
            child = current.get(segment.name)
            if not isinstance(child, dict):
                child = {}
                current[segment.name] = child
            current = child
            continue

        index = 0 if segment.index == WILDCARD else segment.index
        container = current.get(segment.name)
        if not isinstance(container, list):
            container = []
            current[segment.name] = container
        while len(container) <= index:
            container.append(None if last else {})
        if last:
            container[index] = value
            return
        if not isinstance(container[index], dict):
            container[index] = {}
        current = container[index]


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``overlay`` into a copy of ``base``; nested objects merge recursively."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class FactSlot:
    """One fact in the working set; the index is stable for the execution."""
    index: int
    fact_type: str
    data: Dict[str, Any]
    live: bool = True
    version: int = 0
    origin: str = "input"
    inserted_by: Optional[Any] = None

    def touch(self) -> None:
        self.version += 1


@dataclass
class WorkingSet:
    """Arena of fact slots visible to matching during one execution."""
    slots: List[FactSlot] = field(default_factory=list)

    @classmethod
    def from_facts(cls, facts: List[Dict[str, Any]], fact_type: str) -> "WorkingSet":
        working_set = cls()
        for fact in facts:
            working_set.add(fact_type, copy.deepcopy(fact))
        return working_set

    def add(self, fact_type: str, data: Dict[str, Any], origin: str = "input",
            inserted_by: Optional[Any] = None) -> FactSlot:
        slot = FactSlot(
            index=len(self.slots),
            fact_type=fact_type,
            data=data,
            origin=origin,
            inserted_by=inserted_by,
        )
        self.slots.append(slot)
        return slot

    def retract(self, index: int) -> bool:
        slot = self.slots[index]
        if not slot.live:
            return False
        slot.live = False
        slot.touch()
        return True

    def live_slots(self) -> List[FactSlot]:
        return [slot for slot in self.slots if slot.live]

    def __iter__(self) -> Iterator[FactSlot]:
        return iter(self.live_slots())

    def __len__(self) -> int:
        return len(self.live_slots())

    def snapshot(self) -> List[Dict[str, Any]]:
        """Deep copies of the live facts in slot order."""
        return [copy.deepcopy(slot.data) for slot in self.live_slots()]
