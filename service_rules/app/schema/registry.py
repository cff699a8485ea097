"""
Schema type registry for the Rules Service.
"""

import copy
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import NotFoundError, PathNotFoundError, ValidationError
from shared.logging import get_logger

from ..rules.facts import PathError, build_nested, deep_merge, parse_path, strip_type_prefix
from ..rules.models import FieldType, PropertyType, Schema, SchemaProperty, EntityId


class SchemaRegistry:
    """Resolves property paths within the schemas known to one execution or compile."""

    def __init__(self, schemas: Optional[Iterable[Schema]] = None):
        self.logger = get_logger("rules.schema_registry")
        self._schemas: Dict[str, Schema] = {}
        for schema in schemas or ():
            self.register(schema)

    def register(self, schema: Schema) -> None:
        self._schemas[str(schema.id)] = schema

    def schemas(self) -> List[Schema]:
        return list(self._schemas.values())

    def get(self, schema_id: EntityId) -> Schema:
        schema = self._schemas.get(str(schema_id))
        if schema is None:
            raise NotFoundError("Schema", schema_id)
        return schema

    def find_by_name(self, name: str) -> Optional[Schema]:
        """Look a schema up by name, case-insensitively."""
        if not name:
            return None
        for schema in self._schemas.values():
            if schema.name.lower() == name.lower():
                return schema
        return None

    def resolve(self, schema_id: EntityId, path: str) -> SchemaProperty:
        """Resolve a path within a registered schema."""
        return self.resolve_in(self.get(schema_id), path)

    def resolve_in(self, schema: Schema, path: str) -> SchemaProperty:
        """Walk ``properties``/``items`` to the property a path names.

        ``items[]`` and ``items[0]`` both descend into the array's element
        property. A path ending on an array segment with brackets resolves to
        the element property itself.
        """
        relative = strip_type_prefix(path, schema.name)
        try:
            segments = parse_path(relative)
        except PathError:
            raise PathNotFoundError(schema.name, path) from None

        children = schema.properties
        prop: Optional[SchemaProperty] = None
        for segment in segments:
            prop = _child(children, segment.name)
            if prop is None:
                raise PathNotFoundError(schema.name, path)

            if segment.index is not None:
                if prop.type != PropertyType.ARRAY or prop.items is None:
                    raise PathNotFoundError(schema.name, path, {"reason": f"'{segment.name}' is not an array"})
                prop = prop.items

            children = prop.properties

        return prop

    @staticmethod
    def field_type(prop: SchemaProperty) -> FieldType:
        item_type = prop.items.type if prop.items is not None else None
        return FieldType(type=prop.type, format=prop.format, item_type=item_type)

    def defaults(self, schema: Schema) -> Dict[str, Any]:
        """Declared default values of a schema, nested objects included."""
        return _defaults_of(schema.properties)

    def build_fact(self, schema: Schema, fact_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Construct a fact of ``schema``: declared defaults overlaid with ``fact_data``.

        Keys of ``fact_data`` may be dotted paths; they are expanded into
        nested objects before merging.
        """
        overlay: Dict[str, Any] = {}
        for key, value in (fact_data or {}).items():
            relative = strip_type_prefix(key, schema.name)
            if "." in relative or "[" in relative:
                build_nested(overlay, relative, copy.deepcopy(value))
            elif isinstance(value, dict) and isinstance(overlay.get(relative), dict):
                overlay[relative] = deep_merge(overlay[relative], value)
            else:
                overlay[relative] = copy.deepcopy(value)
        return deep_merge(self.defaults(schema), overlay)

    def validate_fact(self, schema: Schema, fact: Any) -> None:
        """Check the structural shape of an input fact against a schema.

        Objects must be objects and arrays must be arrays; scalar values are
        left to per-condition coercion.
        """
        if not isinstance(fact, dict):
            raise ValidationError(
                f"Fact for schema '{schema.name}' must be a JSON object",
                details={"schema": schema.name, "actual": type(fact).__name__}
            )
        _validate_properties(schema.name, schema.properties, fact, "")


def _child(children: List[SchemaProperty], name: str) -> Optional[SchemaProperty]:
    for prop in children:
        if prop.name == name:
            return prop
    return None


def _defaults_of(properties: List[SchemaProperty]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for prop in properties:
        if prop.default_value is not None:
            values[prop.name] = copy.deepcopy(prop.default_value)
        elif prop.type == PropertyType.OBJECT and prop.properties:
            nested = _defaults_of(prop.properties)
            if nested:
                values[prop.name] = nested
    return values


def _validate_properties(schema_name: str, properties: List[SchemaProperty],
                         data: Dict[str, Any], prefix: str) -> None:
    for prop in properties:
        if prop.name not in data or data[prop.name] is None:
            continue
        value = data[prop.name]
        path = f"{prefix}{prop.name}"

        if prop.type == PropertyType.OBJECT:
            if not isinstance(value, dict):
                raise ValidationError(
                    f"Field '{path}' of schema '{schema_name}' must be an object",
                    details={"schema": schema_name, "path": path}
                )
            _validate_properties(schema_name, prop.properties, value, f"{path}.")

        elif prop.type == PropertyType.ARRAY:
            if not isinstance(value, list):
                raise ValidationError(
                    f"Field '{path}' of schema '{schema_name}' must be an array",
                    details={"schema": schema_name, "path": path}
                )
            element = prop.items
            if element is not None and element.type == PropertyType.OBJECT:
                for index, item in enumerate(value):
                    if item is None:
                        continue
                    if not isinstance(item, dict):
                        raise ValidationError(
                            f"Element {index} of '{path}' in schema '{schema_name}' must be an object",
                            details={"schema": schema_name, "path": f"{path}[{index}]"}
                        )
                    _validate_properties(schema_name, element.properties, item, f"{path}[{index}].")
