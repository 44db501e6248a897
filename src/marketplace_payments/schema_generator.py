from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.base import DBSerializableModel
from .models.booking import Booking, Service
from .models.credit_transaction import CreditTransaction
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.payment import Payment
from .models.subscription import Subscription
from .models.user import UserAccount
from .models.wallet import Wallet, WalletTransaction


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    Service,
    Booking,
    Payment,
    CreditTransaction,
    Wallet,
    WalletTransaction,
    Subscription,
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
    Render CREATE TABLE statements plus one CREATE [UNIQUE] INDEX per declared index.
    Migrations proper belong to a migration tool; this is a starting point.
    """
    lines: List[str] = []
    for table_name, table_schema in schema.items():
        props = table_schema["properties"]
        pk = table_schema.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in table_schema.get("required", []) or field_name == pk else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        for index in table_schema.get("indexes", []):
            index_name = f"ix_{table_name}_{'_'.join(index)}"
            cols = ", ".join(f'"{c}"' for c in index)
            ddl += f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{table_name}" ({cols});\n'
        for index in table_schema.get("unique_indexes", []):
            index_name = f"ux_{table_name}_{'_'.join(index)}"
            cols = ", ".join(f'"{c}"' for c in index)
            ddl += f'CREATE UNIQUE INDEX IF NOT EXISTS "{index_name}" ON "{table_name}" ({cols});\n'
        lines.append(ddl)
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and indexes for MongoDB collections.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION" if dialect == "postgres" else "DOUBLE"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"array", "object"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the marketplace payments models."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
