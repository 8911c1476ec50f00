import logging
from pathlib import Path

from sqlalchemy import text

from vm_orchestrator.db import engine
from vm_orchestrator.logging_config import configure_logging
from vm_orchestrator.repositories import now_utc


logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def _statements(script: str) -> list[str]:
    return [part.strip() for part in script.split(";") if part.strip()]


def apply_migrations() -> list[str]:
    """Replay every ``migrations/*.sql`` file not yet in ``schema_migrations``.

    Files run in name order, each in the same transaction as its bookkeeping
    row. Returns the versions applied by this call.
    """
    newly_applied: list[str] = []
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE IF NOT EXISTS schema_migrations "
                "(version VARCHAR(32) PRIMARY KEY, applied_at DATETIME NOT NULL)"
            )
        )
        applied = set(
            conn.execute(text("SELECT version FROM schema_migrations")).scalars()
        )
        for migration in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = migration.stem
            if version in applied:
                continue
            for statement in _statements(migration.read_text(encoding="utf-8")):
                conn.exec_driver_sql(statement)
            conn.execute(
                text(
                    "INSERT INTO schema_migrations (version, applied_at) "
                    "VALUES (:version, :applied_at)"
                ),
                {"version": version, "applied_at": now_utc()},
            )
            logger.info("applied migration version=%s", version)
            newly_applied.append(version)
    return newly_applied


def main() -> int:
    configure_logging()
    versions = apply_migrations()
    print(f"migrations applied: {', '.join(versions) or 'none pending'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
