import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger("taskengine.db")

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def sqlite_path_from_url(db_url: str) -> Path:
    prefix = "sqlite:///"
    if not db_url.startswith(prefix):
        raise ValueError("Only sqlite:/// URLs are supported")

    raw_path = db_url.removeprefix(prefix)
    if raw_path == ":memory:":
        raise ValueError("In-memory databases are not supported; the task store must be durable")

    path = Path(raw_path)
    if not path.is_absolute():
        path = Path.cwd() / path

    return path


def apply_migrations(db_url: str, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply pending ``*.sql`` files in name order and return the versions applied."""

    db_path = sqlite_path_from_url(db_url)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    migration_files = sorted(migrations_dir.glob("*.sql"))
    applied_now: list[str] = []

    connection = sqlite3.connect(db_path)
    try:
        connection.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version TEXT PRIMARY KEY, applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP)"
        )
        applied_versions = {
            row[0]
            for row in connection.execute(
                "SELECT version FROM schema_migrations ORDER BY version"
            ).fetchall()
        }

        for migration_file in migration_files:
            version = migration_file.stem
            if version in applied_versions:
                continue

            connection.executescript(migration_file.read_text(encoding="utf-8"))
            connection.execute(
                "INSERT INTO schema_migrations(version) VALUES (?)",
                (version,),
            )
            applied_now.append(version)

        connection.commit()
    finally:
        connection.close()

    if applied_now:
        logger.info(
            "migrations_applied",
            extra={"db_path": str(db_path), "versions": applied_now},
        )
    return applied_now
