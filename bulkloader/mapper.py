"""Flat CSV record to nested platform resource mapping.

A mapping table maps each CSV heading to a target path expression:

- ``"name"``: bare key on the resource
- ``"customFields.colorCode"``: one level of nesting, never deeper
- ``"tags[0]"``: position in an array field

Paths are parsed once when the table is compiled, not per record.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import re

from bulkloader.errors import InvalidPathError, MissingIdentityFieldError, UnmappedFieldError


_INDEXED_PATH = re.compile(r"^(?P<field>[^\[\]]+)\[(?P<index>\d+)\]$")


@dataclass(frozen=True)
class BarePath:
    key: str


@dataclass(frozen=True)
class NestedPath:
    object_name: str
    field_name: str


@dataclass(frozen=True)
class IndexedPath:
    field_name: str
    index: int


TargetPath = BarePath | NestedPath | IndexedPath


def parse_target_path(expression: str) -> TargetPath:
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidPathError(str(expression), "empty target path")

    if "[" in expression:
        match = _INDEXED_PATH.match(expression)
        if not match:
            raise InvalidPathError(expression, "malformed indexed path")
        return IndexedPath(match.group("field"), int(match.group("index")))

    if "." in expression:
        segments = expression.split(".")
        if len(segments) != 2 or not all(segments):
            raise InvalidPathError(expression, "only two-level paths are supported")
        return NestedPath(segments[0], segments[1])

    return BarePath(expression)


@dataclass(frozen=True)
class MappingTable:
    paths: Mapping[str, TargetPath]

    @classmethod
    def from_dict(cls, raw: Mapping[str, str]) -> "MappingTable":
        paths = {source: parse_target_path(target) for source, target in raw.items()}

        # A top-level field can be a scalar, an object or an array, not a mix.
        kinds: dict[str, type] = {}
        for target, path in zip(raw.values(), paths.values()):
            top_level = path.key if isinstance(path, BarePath) else (
                path.object_name if isinstance(path, NestedPath) else path.field_name
            )
            if kinds.setdefault(top_level, type(path)) is not type(path):
                raise InvalidPathError(target, f"conflicting target shapes for '{top_level}'")

        return cls(paths=paths)

    def __contains__(self, source_field: object) -> bool:
        return source_field in self.paths

    def __getitem__(self, source_field: str) -> TargetPath:
        return self.paths[source_field]


def map_record(
    record: Mapping[str, str],
    mapping: MappingTable,
    identity_field: str = "name",
) -> dict[str, object]:
    resource: dict[str, object] = {}

    # Every CSV heading must be catered for.
    for key, value in record.items():
        if key not in mapping:
            raise UnmappedFieldError(key)

        path = mapping[key]
        if isinstance(path, IndexedPath):
            items = resource.setdefault(path.field_name, {})
            items[path.index] = value
        elif isinstance(path, NestedPath):
            nested = resource.setdefault(path.object_name, {})
            nested[path.field_name] = value
        else:
            resource[path.key] = value

    for path in mapping.paths.values():
        if isinstance(path, IndexedPath) and isinstance(resource.get(path.field_name), dict):
            resource[path.field_name] = _dense_list(path.field_name, resource[path.field_name])

    if not resource.get(identity_field):
        raise MissingIdentityFieldError(identity_field)

    return resource


def _dense_list(field_name: str, items: dict[int, str]) -> list[str]:
    expected = list(range(len(items)))
    if sorted(items) != expected:
        missing = sorted(set(range(max(items) + 1)) - set(items))
        raise InvalidPathError(f"{field_name}{missing}", "sparse array mapping")
    return [items[index] for index in expected]


def get_path(resource: Mapping[str, object], path: TargetPath) -> object:
    if isinstance(path, IndexedPath):
        return resource[path.field_name][path.index]
    if isinstance(path, NestedPath):
        return resource[path.object_name][path.field_name]
    return resource[path.key]
