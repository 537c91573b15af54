"""SQLite state store recording which feed entries were published."""
import logging
import sqlite3
from pathlib import Path

from bskyfeed.errors import IntegrityError

logger = logging.getLogger(__name__)


class StateStore:
    """SQLite database wrapper for published-entry state.

    Presence of a guid in the ``entries`` table means the entry was published.
    Rows are only ever inserted.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS entries (
        guid VARCHAR(255) PRIMARY KEY NOT NULL
    );
    """

    # Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds
    QUERY_CHUNK_SIZE = 500

    def __init__(self, db_path: Path):
        """Open the database, creating the file and table if needed."""
        self.db_path = Path(db_path)
        if self.db_path.parent != Path("."):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        try:
            self._init_schema()
        except sqlite3.DatabaseError:
            self.conn.close()
            raise

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()

    @property
    def closed(self) -> bool:
        return self.conn is None

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute SQL and return cursor."""
        return self.conn.execute(sql, params)

    def close(self) -> None:
        """Commit pending writes and release the connection. Safe to call twice."""
        if self.conn is None:
            return
        self.conn.commit()
        self.conn.close()
        self.conn = None
        logger.debug(f"Closed state store {self.db_path}")

    def contains(self, guid: str) -> bool:
        """Check if entry has already been published."""
        cursor = self.execute("SELECT 1 FROM entries WHERE guid = ?", (guid,))
        return cursor.fetchone() is not None

    def contains_any(self, guids: set[str]) -> set[str]:
        """Return the subset of ``guids`` already recorded."""
        pending = sorted(guids)
        existing: set[str] = set()
        for start in range(0, len(pending), self.QUERY_CHUNK_SIZE):
            chunk = pending[start:start + self.QUERY_CHUNK_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = self.execute(
                f"SELECT guid FROM entries WHERE guid IN ({placeholders})",
                tuple(chunk),
            )
            existing.update(row["guid"] for row in cursor.fetchall())
        return existing

    def record(self, guid: str) -> None:
        """Mark entry as published.

        Raises:
            IntegrityError: the guid is already recorded
        """
        try:
            self.execute("INSERT INTO entries (guid) VALUES (?)", (guid,))
        except sqlite3.IntegrityError as e:
            raise IntegrityError(f"Entry already recorded: {guid}") from e
        self.conn.commit()

    def count(self) -> int:
        """Number of recorded entries."""
        return self.execute("SELECT COUNT(*) AS n FROM entries").fetchone()["n"]
