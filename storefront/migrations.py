from sqlalchemy import inspect, text

from .db import engine


def _timestamp_type() -> str:
    return "TIMESTAMP" if engine.dialect.name == "postgresql" else "DATETIME"


def _has_unique_pair(inspector, table: str, columns: list[str]) -> bool:
    wanted = sorted(columns)
    for constraint in inspector.get_unique_constraints(table):
        if sorted(constraint.get("column_names") or []) == wanted:
            return True
    for index in inspector.get_indexes(table):
        if index.get("unique") and sorted(index.get("column_names") or []) == wanted:
            return True
    return False


def _index_names(inspector, table: str) -> set[str]:
    return {index.get("name") for index in inspector.get_indexes(table) if index.get("name")}


def ensure_schema() -> None:
    """Bring databases created by older builds up to the current layout.

    Only additive changes: new nullable columns and missing indexes.
    """
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    timestamp_type = _timestamp_type()

    if "demo_claims" in tables:
        statements = []
        if not _has_unique_pair(inspector, "demo_claims", ["user_id", "game_slug"]):
            statements.append(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_demo_claim_user_game "
                "ON demo_claims (user_id, game_slug)"
            )
        _apply_alters(statements)

    if "purchases" in tables:
        statements = []
        if "ix_purchases_user_game" not in _index_names(inspector, "purchases"):
            statements.append(
                "CREATE INDEX IF NOT EXISTS ix_purchases_user_game ON purchases (user_id, game_slug)"
            )
        _apply_alters(statements)

    if "game_downloads" in tables:
        columns = {col["name"] for col in inspector.get_columns("game_downloads")}
        statements = []
        if "file_name" not in columns:
            statements.append("ALTER TABLE game_downloads ADD COLUMN file_name VARCHAR(255)")
        if "mime_type" not in columns:
            statements.append("ALTER TABLE game_downloads ADD COLUMN mime_type VARCHAR(120)")
        if "created_by" not in columns:
            statements.append("ALTER TABLE game_downloads ADD COLUMN created_by VARCHAR(36)")
        if "created_at" not in columns:
            # SQLite refuses non-constant defaults on ADD COLUMN.
            default = "" if engine.dialect.name == "sqlite" else " DEFAULT CURRENT_TIMESTAMP"
            statements.append(f"ALTER TABLE game_downloads ADD COLUMN created_at {timestamp_type}{default}")
        if "ix_game_downloads_target" not in _index_names(inspector, "game_downloads"):
            statements.append(
                "CREATE INDEX IF NOT EXISTS ix_game_downloads_target "
                "ON game_downloads (game_slug, kind, device, created_at)"
            )
        _apply_alters(statements)


def _apply_alters(statements: list[str]) -> None:
    if not statements:
        return
    with engine.begin() as connection:
        for statement in statements:
            connection.execute(text(statement))
