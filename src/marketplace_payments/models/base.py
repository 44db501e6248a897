from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # (field, ...) tuples the Mongo backend creates indexes for
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = ()

    # Unique over documents where every field is set; both backends enforce these
    unique_indexes: ClassVar[tuple[tuple[str, ...], ...]] = ()

    def serialize_for_db(self, exclude_none: bool = True) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed. Enum members
        are stored by value.
        """
        data = self.model_dump(by_alias=True, exclude_none=exclude_none)
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in data.items()
        }

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type = cls._map_type(field.annotation)

            default = field.default
            if isinstance(default, Enum):
                default = default.value
            properties[name] = {
                "type": field_type,
                "nullable": field.is_required() is False and not field.serialization_alias,
                "default": default if default is not None else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [list(index) for index in cls.indexes],
            "unique_indexes": [list(index) for index in cls.unique_indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        # Optional[X] -> X
        args = getattr(annotation, "__args__", None)
        if args and type(None) in args:
            inner = [a for a in args if a is not type(None)]
            if len(inner) == 1:
                return DBSerializableModel._map_type(inner[0])

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if annotation in (int,):
            return "integer"
        if annotation in (float,):
            return "number"
        if annotation in (bool,):
            return "boolean"
        if annotation in (str,):
            return "string"

        # Fallback for datetime, UUID, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()


class TimestampedModel(DBSerializableModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
