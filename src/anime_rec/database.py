import sqlite3
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from .config import DB_PATH, DEFAULT_PROFILE_NAME, PROFILE_SCHEMA_VERSION
from .profile import UserProfile
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    SQLite connections keyed by thread, with transaction nesting tracking.

    SQLite connections must not be shared between threads, so each thread
    gets its own connection on first use.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id}")
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

            self._connections.clear()
            self._transaction_depth.clear()


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts are
    no-ops for transaction control.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                name TEXT PRIMARY KEY,
                profile_data TEXT,  -- JSON record of UserProfile
                updated_at TEXT,
                schema_version INTEGER DEFAULT 0
            );
        """)
        _migrate_user_profiles_table(conn)


def _migrate_user_profiles_table(conn):
    """Add schema_version column to user_profiles tables created before it existed."""
    existing_columns = {row[1] for row in conn.execute("PRAGMA table_info(user_profiles)")}

    if 'schema_version' not in existing_columns:
        try:
            conn.execute("ALTER TABLE user_profiles ADD COLUMN schema_version INTEGER DEFAULT 0")
            logger.info("Added column 'schema_version' to user_profiles table")
        except sqlite3.Error as e:
            logger.warning(f"Could not add column 'schema_version': {e}")


def load_profile(name: str = DEFAULT_PROFILE_NAME) -> UserProfile | None:
    """
    Load a stored profile, or None when there is none.

    A record that cannot be decoded is logged and treated as absent, so the
    caller starts from a fresh profile instead of aborting the session.
    """
    init_db()
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT profile_data, schema_version FROM user_profiles WHERE name = ?",
            (name,),
        ).fetchone()

    if not row or not row['profile_data']:
        return None

    try:
        payload = json.loads(row['profile_data'])
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Stored profile '{name}' is unreadable, starting fresh: {e}")
        return None

    if not isinstance(payload, dict):
        logger.warning(f"Stored profile '{name}' has unexpected shape, starting fresh")
        return None

    # Records without an embedded version fall back to the column
    payload.setdefault("schema_version", row['schema_version'] or None)
    return UserProfile.from_dict(payload)


@retry_with_backoff(max_retries=3, initial_delay=0.5, exceptions=(sqlite3.OperationalError,))
def save_profile(profile: UserProfile, name: str = DEFAULT_PROFILE_NAME) -> None:
    """Persist the profile with a naive timestamp and the current schema version."""
    init_db()
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_profiles (name, profile_data, updated_at, schema_version)
            VALUES (?, ?, ?, ?)
        """, (name, json.dumps(profile.to_dict(), ensure_ascii=False), datetime.now().isoformat(), PROFILE_SCHEMA_VERSION))


def delete_profile(name: str = DEFAULT_PROFILE_NAME) -> bool:
    """Delete a stored profile; returns whether one existed."""
    init_db()
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM user_profiles WHERE name = ?", (name,))
        return cursor.rowcount > 0


def list_profiles() -> list[dict]:
    init_db()
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT name, updated_at, schema_version FROM user_profiles ORDER BY name"
        ).fetchall()
    return [dict(row) for row in rows]


def export_profile(path: str | Path, name: str = DEFAULT_PROFILE_NAME) -> bool:
    """Write the stored profile as readable JSON; False when there is nothing to export."""
    profile = load_profile(name)
    if profile is None:
        return False
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(profile.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return True


def import_profile(path: str | Path, name: str = DEFAULT_PROFILE_NAME) -> UserProfile | None:
    """Replace the stored profile with one read from a JSON file."""
    source = Path(path)
    if not source.exists():
        logger.error(f"Profile file {source} not found")
        return None
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.error(f"Profile file {source} is not valid JSON: {e}")
        return None
    if not isinstance(payload, dict):
        logger.error(f"Profile file {source} does not contain a JSON object")
        return None

    profile = UserProfile.from_dict(payload)
    save_profile(profile, name)
    return profile
