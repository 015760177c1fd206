"""
Database module for swingtrack

Persists weekly watchlists and runtime configuration in SQLite.

Databases:
- watchlists.db: One JSON document per trading week
- config.db: Typed key/value configuration
"""

import json
import logging
import sqlite3
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from swingtrack.config import DEFAULT_CONFIG, IST
from swingtrack.watchlist import Watchlist, WatchlistStatus

logger = logging.getLogger(__name__)


def _convert(value: str, type_: str) -> Any:
    if type_ == 'int':
        return int(value)
    elif type_ == 'float':
        return float(value)
    elif type_ == 'bool':
        return value.lower() == 'true'
    return value


class DatabaseManager:
    """Manages database connections and operations"""

    def __init__(self, db_dir: str = "data"):
        """
        Initialize database manager

        Args:
            db_dir: Directory to store database files
        """
        self.db_dir = Path(db_dir)
        self.db_dir.mkdir(parents=True, exist_ok=True)

        self.watchlists_db = self.db_dir / "watchlists.db"
        self.config_db = self.db_dir / "config.db"

        self._init_watchlists_db()
        self._init_config_db()

    def _get_connection(self, db_path: Path) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_watchlists_db(self):
        """
        Initialize watchlists.db schema

        The full aggregate is stored as a JSON document; status and week
        boundaries are duplicated into columns for lookups.
        """
        conn = self._get_connection(self.watchlists_db)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS watchlists (
                week_start TEXT PRIMARY KEY,
                week_end TEXT NOT NULL,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_watchlists_status
            ON watchlists(status)
        """)

        conn.commit()
        conn.close()

    def _init_config_db(self):
        """Initialize config.db schema and seed default policy values"""
        conn = self._get_connection(self.config_db)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                type TEXT NOT NULL,
                description TEXT,
                last_updated TEXT NOT NULL
            )
        """)

        timestamp = datetime.now(IST).isoformat()
        for key, value, type_, description in DEFAULT_CONFIG:
            cursor.execute("""
                INSERT OR IGNORE INTO config (key, value, type, description, last_updated)
                VALUES (?, ?, ?, ?, ?)
            """, (key, value, type_, description, timestamp))

        conn.commit()
        conn.close()

    # Watchlist operations

    def insert_watchlist(self, watchlist: Watchlist) -> bool:
        """
        Insert or replace the document for watchlist.week_start

        Args:
            watchlist: Watchlist aggregate

        Returns:
            True if successful
        """
        conn = self._get_connection(self.watchlists_db)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO watchlists (week_start, week_end, status, document, last_updated)
                VALUES (?, ?, ?, ?, ?)
            """, (
                watchlist.key,
                watchlist.week_end.isoformat(),
                watchlist.status.value,
                json.dumps(watchlist.to_dict()),
                datetime.now(IST).isoformat(),
            ))
            conn.commit()
            return True
        finally:
            conn.close()

    def get_watchlist(self, week_start: Union[date, str]) -> Optional[Watchlist]:
        """
        Load the watchlist whose week starts on week_start

        Raises:
            SchemaError: If the stored document is malformed
        """
        key = week_start.isoformat() if isinstance(week_start, date) else week_start
        conn = self._get_connection(self.watchlists_db)
        try:
            row = conn.execute(
                "SELECT document FROM watchlists WHERE week_start = ?", (key,)
            ).fetchone()
        finally:
            conn.close()

        if not row:
            return None
        return Watchlist.from_dict(json.loads(row['document']))

    def get_watchlists(self, status: Optional[WatchlistStatus] = None) -> List[Watchlist]:
        """List watchlists, newest week first, optionally filtered by status"""
        conn = self._get_connection(self.watchlists_db)
        try:
            if status is not None:
                rows = conn.execute(
                    "SELECT document FROM watchlists WHERE status = ? ORDER BY week_start DESC",
                    (WatchlistStatus(status).value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT document FROM watchlists ORDER BY week_start DESC"
                ).fetchall()
        finally:
            conn.close()

        return [Watchlist.from_dict(json.loads(row['document'])) for row in rows]

    def find_active(self) -> Optional[Watchlist]:
        """Newest ACTIVE watchlist, if any"""
        actives = self.get_watchlists(WatchlistStatus.ACTIVE)
        return actives[0] if actives else None

    # Configuration operations

    def get_config(self, key: str) -> Optional[Any]:
        """Get configuration value by key"""
        conn = self._get_connection(self.config_db)
        try:
            row = conn.execute("SELECT value, type FROM config WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()

        if not row:
            return None
        return _convert(row['value'], row['type'])

    def set_config(self, key: str, value: Any, type_: str,
                   description: Optional[str] = None) -> bool:
        """Set configuration value"""
        if type_ not in ('int', 'float', 'bool', 'str'):
            raise ValueError(f"Unknown config type: {type_}")
        stored = str(value).lower() if type_ == 'bool' else str(value)

        conn = self._get_connection(self.config_db)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO config (key, value, type, description, last_updated)
                VALUES (?, ?, ?, ?, ?)
            """, (key, stored, type_, description, datetime.now(IST).isoformat()))
            conn.commit()
            return True
        finally:
            conn.close()

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration values"""
        conn = self._get_connection(self.config_db)
        try:
            rows = conn.execute("SELECT key, value, type FROM config").fetchall()
        finally:
            conn.close()

        return {row['key']: _convert(row['value'], row['type']) for row in rows}

    # Transaction operations

    def execute_with_retry(self, operation, max_retries: int = 3, base_delay: float = 0.1) -> bool:
        """
        Execute a database write, retrying when SQLite reports the database
        is locked or busy

        Args:
            operation: Callable that performs the database operation
            max_retries: Maximum number of attempts
            base_delay: First backoff delay in seconds, doubled per attempt

        Returns:
            Result of operation, or False if every attempt failed
        """
        for attempt in range(max_retries):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if attempt < max_retries - 1:
                    wait_time = base_delay * (2 ** attempt)
                    logger.warning("Database operation failed (attempt %d/%d): %s. Retrying in %.2fs",
                                   attempt + 1, max_retries, e, wait_time)
                    time.sleep(wait_time)
                else:
                    logger.error("Database operation failed after %d attempts: %s", max_retries, e)
        return False

    def save_watchlist(self, watchlist: Watchlist) -> bool:
        """Save watchlist with retry logic"""
        return self.execute_with_retry(lambda: self.insert_watchlist(watchlist))

    def save_config(self, key: str, value: Any, type_: str,
                    description: Optional[str] = None) -> bool:
        """Save configuration with retry logic"""
        return self.execute_with_retry(lambda: self.set_config(key, value, type_, description))
