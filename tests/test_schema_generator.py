from __future__ import annotations

import json

from marketplace_payments.schema_generator import (
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_all_collections():
    schema = generate_logical_schema()
    assert {
        "users",
        "services",
        "bookings",
        "payments",
        "credit_transactions",
        "wallets",
        "wallet_transactions",
        "subscriptions",
        "audit_ledger",
    } <= set(schema)
    assert "amount" in schema["payments"]["properties"]


def test_sql_ddl_includes_tables_and_indexes():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "payments"' in ddl
    assert '"stripe_payment_intent_id" TEXT NOT NULL' in ddl
    assert 'PRIMARY KEY ("id")' in ddl
    assert 'CREATE INDEX IF NOT EXISTS "ix_payments_status_updated_at" ON "payments" ("status", "updated_at");' in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "ux_credit_transactions_user_id_reference_type" '
        'ON "credit_transactions" ("user_id", "reference", "type");'
    ) in ddl
    assert "TIMESTAMPTZ" in ddl
    assert "TIMESTAMPTZ" not in render_sql_ddl(generate_logical_schema(), dialect="mysql")


def test_nosql_schema_is_json():
    parsed = json.loads(render_nosql_schema(generate_logical_schema()))
    assert parsed["wallets"]["indexes"] == [["stripe_account_id"]]
    assert parsed["wallets"]["unique_indexes"] == [["user_id"]]
    assert parsed["wallet_transactions"]["unique_indexes"] == [["stripe_payment_id"]]


def test_cli_prints_schema(capsys):
    main(["--backend", "sql"])
    assert "CREATE TABLE" in capsys.readouterr().out
