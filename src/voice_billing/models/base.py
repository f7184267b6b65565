from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict


IndexSpec = Tuple[Sequence[Tuple[str, int]], Dict[str, Any]]


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for every persisted billing document.

    It knows how to:
    - Serialize itself for MongoDB persistence
    - Describe its logical schema and the indexes the collection needs

    Enum fields are stored as their plain string values so documents stay
    readable from the Mongo shell and other services.
    """

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    # Logical collection name; subclasses must override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # ([(field, direction), ...], index options)
    indexes: ClassVar[List[IndexSpec]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields,
        together with the index declarations for the collection.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": None if field.is_required() else _json_default(field.default),
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [
                {"keys": [list(key) for key in keys], "options": dict(options)}
                for keys, options in cls.indexes
            ],
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        if annotation in (int,):
            return "integer"
        if annotation in (float,):
            return "number"
        if annotation in (bool,):
            return "boolean"
        if annotation in (str,):
            return "string"

        # Fallback for datetime, enums, Optional[...] etc.
        name = getattr(annotation, "__name__", "object")
        return name.lower()


def _json_default(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return None
