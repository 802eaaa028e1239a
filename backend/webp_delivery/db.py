"""Database layer. SQLite by default; set DATABASE_URL (or MYSQL_*) for MySQL.
Holds the media library (attachments) and small key-value options such as the bulk job progress.
Startup ensures required tables exist; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start."""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool

from webp_delivery import config as app_config

logger = logging.getLogger("webp_delivery.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("attachments", "options")

PUBLISHED = "published"


class OptionVersionConflict(Exception):
    """An option row changed since it was read."""


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    return "MySQL" if _is_mysql() else "SQLite"


def _make_engine(url: str) -> Engine:
    kwargs: dict = {}
    if "sqlite" in url:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def dispose_engine() -> None:
    """Close pooled connections; the next get_engine() call reads DATABASE_URL again."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_path TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            original_mime TEXT NOT NULL,
            status TEXT NOT NULL,
            sizes_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS options (
            name TEXT PRIMARY KEY,
            value_json TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS attachments (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            file_path VARCHAR(1024) NOT NULL,
            mime_type VARCHAR(100) NOT NULL,
            original_mime VARCHAR(100) NOT NULL,
            status VARCHAR(50) NOT NULL,
            sizes_json TEXT,
            created_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS options (
            name VARCHAR(191) PRIMARY KEY,
            value_json LONGTEXT,
            version INT NOT NULL DEFAULT 1,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to SQLite file or in-memory so the app can start."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        _ensure_tables(get_engine())
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning("Database connection failed (%s): %s. Will try fallback.", kind, e.orig, exc_info=True)
        if _is_mysql():
            try:
                sqlite_path = app_config.BASE_DIR / "data" / "webp_delivery.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
                dispose_engine()
                _ensure_tables(get_engine())
                logger.warning("MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.", sqlite_path)
                return
            except Exception as fallback_err:
                logger.exception("SQLite file fallback failed: %s. Trying in-memory SQLite.", fallback_err)

    # Last resort: in-memory SQLite so the app can run (library and progress will not persist across restarts)
    app_config.DATABASE_URL = "sqlite:///:memory:"
    dispose_engine()
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Using in-memory SQLite. Progress will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_attachment(row) -> dict:
    return {
        "id": row[0],
        "file_path": row[1],
        "mime_type": row[2],
        "original_mime": row[3],
        "status": row[4],
        "sizes": json.loads(row[5]) if row[5] else [],
    }


_ATTACHMENT_COLUMNS = "id, file_path, mime_type, original_mime, status, sizes_json"


def register_attachment(
    file_path: str,
    mime_type: str,
    *,
    status: str = PUBLISHED,
    sizes: Optional[list[str]] = None,
) -> int:
    """Add an image to the library. Returns the new attachment id."""
    now = _now_iso()
    params = {
        "file_path": file_path,
        "mime_type": mime_type,
        "status": status,
        "sizes_json": json.dumps(sizes or []),
        "now": now,
    }
    with session() as conn:
        result = conn.execute(
            text("""
                INSERT INTO attachments (file_path, mime_type, original_mime, status, sizes_json, created_at, updated_at)
                VALUES (:file_path, :mime_type, :mime_type, :status, :sizes_json, :now, :now)
            """),
            params,
        )
        return int(result.lastrowid)


def get_attachment_paths() -> set[str]:
    with get_engine().connect() as conn:
        rows = conn.execute(text("SELECT file_path FROM attachments")).fetchall()
    return {r[0] for r in rows}


def _eligible_where() -> str:
    return "original_mime IN :mimes AND status = :status"


def count_eligible_attachments(mime_types: Sequence[str] = app_config.LIBRARY_MIME_TYPES) -> int:
    """Library records whose original upload was one of mime_types and that are published."""
    stmt = text(f"SELECT COUNT(*) FROM attachments WHERE {_eligible_where()}").bindparams(
        bindparam("mimes", expanding=True)
    )
    with get_engine().connect() as conn:
        row = conn.execute(stmt, {"mimes": list(mime_types), "status": PUBLISHED}).fetchone()
    return int(row[0]) if row else 0


def list_eligible_attachments(
    offset: int,
    limit: int,
    mime_types: Sequence[str] = app_config.LIBRARY_MIME_TYPES,
) -> list[dict]:
    """Eligible records ordered by id. Ordering is stable while records are repointed."""
    stmt = text(
        f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE {_eligible_where()} "
        "ORDER BY id LIMIT :lim OFFSET :off"
    ).bindparams(bindparam("mimes", expanding=True))
    with get_engine().connect() as conn:
        rows = conn.execute(
            stmt,
            {"mimes": list(mime_types), "status": PUBLISHED, "lim": limit, "off": offset},
        ).fetchall()
    return [_row_to_attachment(r) for r in rows]


def repoint_attachment(attachment_id: int, file_path: str, mime_type: str, sizes: Optional[list[str]] = None) -> None:
    """Point a record at a new file (e.g. its WebP artifact). original_mime is left as registered."""
    set_parts = ["file_path = :file_path", "mime_type = :mime_type", "updated_at = :now"]
    params: dict[str, Any] = {"id": attachment_id, "file_path": file_path, "mime_type": mime_type, "now": _now_iso()}
    if sizes is not None:
        set_parts.append("sizes_json = :sizes_json")
        params["sizes_json"] = json.dumps(sizes)
    with session() as conn:
        conn.execute(text(f"UPDATE attachments SET {', '.join(set_parts)} WHERE id = :id"), params)


def get_option(name: str) -> Optional[tuple[Any, int]]:
    """Return (value, version) or None when the option is not set."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT value_json, version FROM options WHERE name = :name"),
            {"name": name},
        ).fetchone()
    if not row:
        return None
    return (json.loads(row[0]) if row[0] else None), int(row[1])


def save_option(name: str, value: Any, expected_version: Optional[int]) -> int:
    """Write value if the stored version still equals expected_version (None: must not exist yet).
    Returns the new version; raises OptionVersionConflict otherwise."""
    now = _now_iso()
    params = {"name": name, "value_json": json.dumps(value), "now": now, "expected": expected_version}
    with session() as conn:
        if expected_version is None:
            try:
                conn.execute(
                    text("INSERT INTO options (name, value_json, version, updated_at) VALUES (:name, :value_json, 1, :now)"),
                    params,
                )
            except IntegrityError as e:
                raise OptionVersionConflict(f"Option {name} was created concurrently") from e
            return 1
        result = conn.execute(
            text("""
                UPDATE options SET value_json = :value_json, version = version + 1, updated_at = :now
                WHERE name = :name AND version = :expected
            """),
            params,
        )
        if result.rowcount != 1:
            raise OptionVersionConflict(f"Option {name} changed since version {expected_version}")
    return expected_version + 1


def delete_option(name: str) -> None:
    with session() as conn:
        conn.execute(text("DELETE FROM options WHERE name = :name"), {"name": name})
