from orbbot.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_ledger_schema,
)

__all__ = ["create_sqlite_connection", "ensure_ledger_schema"]
