from __future__ import annotations

import types
import typing
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel
from pydantic_core import PydanticUndefined


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

    # Fields that must be unique across the collection.
    unique_fields: ClassVar[Tuple[str, ...]] = ()

    # Fields that must be unique only when set (partial/sparse unique index).
    sparse_unique_fields: ClassVar[Tuple[str, ...]] = ()

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
            default = None if field.default is PydanticUndefined else field.default
            if isinstance(default, Enum):
                default = default.value

            properties[name] = {
                "type": field_type,
                "nullable": not field.is_required(),
                "default": default,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "unique": list(cls.unique_fields),
            "sparse_unique": list(cls.sparse_unique_fields),
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = typing.get_origin(annotation)
        if origin is typing.Union or origin is types.UnionType:
            args = [a for a in typing.get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return DBSerializableModel._map_type(args[0])
            return "object"
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if annotation is datetime:
            return "datetime"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
