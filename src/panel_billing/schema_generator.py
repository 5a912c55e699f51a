from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from .models.base import DBSerializableModel
from .models.gift_card import GiftCard, GiftCardRedemption
from .models.instance import UserServerInstance
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.plan import ServerPlan
from .models.setting import Setting
from .models.transaction import Transaction
from .models.user import UserAccount


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    Transaction,
    Setting,
    GiftCard,
    GiftCardRedemption,
    ServerPlan,
    UserServerInstance,
    NotificationEvent,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer. Credit, gift card and stock counters are guarded
    with CHECK constraints so the store itself refuses a negative balance or
    an overspent card.
    """
    lines: List[str] = []
    for table_name, table_schema in schema.items():
        props = table_schema["properties"]
        pk = table_schema.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in table_schema.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        for field_name in table_schema.get("unique", []):
            columns.append(f'    UNIQUE ("{field_name}")')
        for check in _CHECKS.get(table_name, []):
            columns.append(f"    CHECK ({check})")
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        lines.append(ddl)
    return "\n".join(lines)


_CHECKS: Dict[str, List[str]] = {
    UserAccount.collection_name: ['"credits" >= 0'],
    GiftCard.collection_name: ['"uses" <= "max_uses"', '"credits" > 0'],
    ServerPlan.collection_name: [
        '"stock_limit" = 0 OR "stock_used" <= "stock_limit"',
        '"stock_used" >= 0',
    ],
}


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render the logical schema as JSON for document stores, adding the
    unique indexes each collection needs (MongoDB `createIndex` options).
    """
    documents = {
        name: {
            **table_schema,
            "indexes": [
                {"keys": {field: 1}, "unique": True} for field in table_schema.get("unique", [])
            ],
        }
        for name, table_schema in schema.items()
    }
    return json.dumps(documents, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "decimal":
        return "NUMERIC(12, 2)"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMP"
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "TEXT"
    return "TEXT"


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate storage schemas for the panel billing collections."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Relational DDL or a document-store schema.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write to this file instead of stdout.",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output is None:
        print(rendered)
    else:
        args.output.write_text(rendered, encoding="utf-8")


if __name__ == "__main__":
    main()
