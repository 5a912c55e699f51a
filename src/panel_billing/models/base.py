from __future__ import annotations

from decimal import Decimal
from enum import Enum
from types import UnionType
from typing import Any, ClassVar, Dict, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel


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

    # Fields that carry a uniqueness constraint in every backend
    unique_fields: ClassVar[tuple[str, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value and decimals are kept as `Decimal`;
        backends that need a native decimal type convert them on write.
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
            default = (
                None if field.is_required() else field.get_default(call_default_factory=False)
            )
            if isinstance(default, Enum):
                default = default.value

            properties[name] = {
                "type": field_type,
                "nullable": cls._is_optional(field.annotation),
                "default": default if not callable(default) else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique": list(cls.unique_fields),
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _is_optional(annotation: Any) -> bool:
        return get_origin(annotation) in (Union, UnionType) and type(None) in get_args(annotation)

    @classmethod
    def _map_type(cls, annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        if cls._is_optional(annotation):
            inner = [arg for arg in get_args(annotation) if arg is not type(None)]
            annotation = inner[0] if len(inner) == 1 else object

        origin: Any = get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is Decimal:
            return "decimal"
        if annotation is str:
            return "string"

        # Fallback for datetime, UUID, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()
