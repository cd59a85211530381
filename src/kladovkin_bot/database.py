import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Generator, List, Optional

from .errors import StoreError
from .models import Subscription, SubscriptionStatus, Unit, UnitRecord, User
from .store import SubscriptionStore, UnitCatalog


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database(UnitCatalog, SubscriptionStore):
    """SQLite repository for units, users and subscriptions"""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._init_db()

    @contextmanager
    def _get_conn(self) -> Generator[sqlite3.Connection, None, None]:
        """Get database connection context manager"""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database tables"""
        with self._get_conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    telegram_id INTEGER NOT NULL UNIQUE,
                    username TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_notified TEXT
                );

                CREATE TABLE IF NOT EXISTS units (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    city TEXT NOT NULL,
                    storage_name TEXT NOT NULL,
                    size TEXT NOT NULL,
                    dimension TEXT NOT NULL DEFAULT '',
                    price REAL NOT NULL DEFAULT 0,
                    available INTEGER NOT NULL DEFAULT 1,
                    description TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(city, storage_name, size)
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    city TEXT NOT NULL,
                    storage_name TEXT NOT NULL,
                    unit_size TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    UNIQUE(user_id, city, storage_name, unit_size)
                );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_user_id
                    ON subscriptions(user_id);
                CREATE INDEX IF NOT EXISTS idx_subscriptions_status
                    ON subscriptions(status);
                CREATE INDEX IF NOT EXISTS idx_units_city
                    ON units(city);
            """)

    # Row mapping
    @staticmethod
    def _row_to_unit(row: sqlite3.Row) -> Unit:
        return Unit(
            id=row["id"],
            city=row["city"],
            storage_name=row["storage_name"],
            size=row["size"],
            dimension=row["dimension"],
            price=row["price"],
            available=bool(row["available"]),
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            telegram_id=row["telegram_id"],
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            last_notified=_parse_ts(row["last_notified"]),
        )

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            city=row["city"],
            storage_name=row["storage_name"],
            unit_size=row["unit_size"],
            status=SubscriptionStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # Unit operations
    def upsert_unit(self, record: UnitRecord) -> Unit:
        """Insert or update a unit by (city, storage_name, size)"""
        now = datetime.now().isoformat()
        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO units (city, storage_name, size, dimension, price, available,
                                   description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(city, storage_name, size) DO UPDATE SET
                    dimension = excluded.dimension,
                    price = excluded.price,
                    available = excluded.available,
                    description = excluded.description,
                    updated_at = excluded.updated_at
                """,
                (
                    record.city, record.storage_name, record.size, record.dimension,
                    record.price, int(record.available), record.description, now, now,
                )
            )
            row = conn.execute(
                "SELECT * FROM units WHERE city = ? AND storage_name = ? AND size = ?",
                record.key
            ).fetchone()
        return self._row_to_unit(row)

    def find_unit(self, city: str, storage_name: str, size: str) -> Optional[Unit]:
        """Find unit by natural key"""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM units WHERE city = ? AND storage_name = ? AND size = ?",
                (city, storage_name, size)
            ).fetchone()
        return self._row_to_unit(row) if row else None

    def all_units(self) -> List[Unit]:
        """Get all units"""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM units ORDER BY city, storage_name, size"
            ).fetchall()
        return [self._row_to_unit(row) for row in rows]

    def get_cities(self) -> List[str]:
        """Get all distinct cities in the catalog"""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT DISTINCT city FROM units ORDER BY city"
            ).fetchall()
        return [row["city"] for row in rows]

    def get_storages_by_city(self, city: str) -> List[str]:
        """Get storage names of a city"""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT DISTINCT storage_name FROM units WHERE city = ? ORDER BY storage_name",
                (city,)
            ).fetchall()
        return [row["storage_name"] for row in rows]

    def get_sizes_by_storage(self, city: str, storage_name: str) -> List[str]:
        """Get unit sizes of a storage"""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT DISTINCT size FROM units WHERE city = ? AND storage_name = ? ORDER BY size",
                (city, storage_name)
            ).fetchall()
        return [row["size"] for row in rows]

    # User operations
    def add_user(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """Register a user or refresh the display names of an existing one"""
        now = datetime.now().isoformat()
        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO users (telegram_id, username, first_name, last_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(telegram_id) DO UPDATE SET
                    username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    updated_at = excluded.updated_at
                """,
                (telegram_id, username, first_name, last_name, now, now)
            )
            row = conn.execute(
                "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)
            ).fetchone()
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        """Get user by id"""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        """Get user by Telegram chat id"""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def user_exists(self, telegram_id: int) -> bool:
        """Check if a Telegram user is registered"""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM users WHERE telegram_id = ?", (telegram_id,)
            ).fetchone()
        return row is not None

    def update_user_last_notified(self, user_id: int, timestamp: datetime) -> None:
        """Set last_notified of a user"""
        with self._get_conn() as conn:
            cursor = conn.execute(
                "UPDATE users SET last_notified = ?, updated_at = ? WHERE id = ?",
                (timestamp.isoformat(), datetime.now().isoformat(), user_id)
            )
        if cursor.rowcount == 0:
            raise StoreError(f"user {user_id} not found")

    # Subscription operations
    def add_subscription(self, user_id: int, city: str, storage_name: str, unit_size: str) -> Optional[Subscription]:
        """Create a subscription or re-activate an inactive one.

        Returns None if the same subscription is already active.
        """
        now = datetime.now().isoformat()
        with self._get_conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE user_id = ? AND city = ? AND storage_name = ? AND unit_size = ?
                """,
                (user_id, city, storage_name, unit_size)
            ).fetchone()
            if row is None:
                cursor = conn.execute(
                    """
                    INSERT INTO subscriptions (user_id, city, storage_name, unit_size, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, city, storage_name, unit_size, SubscriptionStatus.ACTIVE.value, now, now)
                )
                subscription_id = cursor.lastrowid
            elif row["status"] == SubscriptionStatus.ACTIVE.value:
                return None
            else:
                subscription_id = row["id"]
                conn.execute(
                    "UPDATE subscriptions SET status = ?, updated_at = ? WHERE id = ?",
                    (SubscriptionStatus.ACTIVE.value, now, subscription_id)
                )
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        return self._row_to_subscription(row)

    def deactivate_subscription(self, user_id: int, subscription_id: int) -> bool:
        """Mark a user's subscription inactive, returns False if it was not active"""
        with self._get_conn() as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions SET status = ?, updated_at = ?
                WHERE id = ? AND user_id = ? AND status = ?
                """,
                (
                    SubscriptionStatus.INACTIVE.value, datetime.now().isoformat(),
                    subscription_id, user_id, SubscriptionStatus.ACTIVE.value,
                )
            )
        return cursor.rowcount > 0

    def get_subscription(self, subscription_id: int, user_id: Optional[int] = None) -> Optional[Subscription]:
        """Get subscription by id, optionally only if owned by ``user_id``"""
        query = "SELECT * FROM subscriptions WHERE id = ?"
        params: tuple = (subscription_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params += (user_id,)
        with self._get_conn() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_subscription(row) if row else None

    def get_user_subscriptions(self, user_id: int, active_only: bool = True) -> List[Subscription]:
        """Get subscriptions of a user"""
        query = "SELECT * FROM subscriptions WHERE user_id = ?"
        params: tuple = (user_id,)
        if active_only:
            query += " AND status = ?"
            params += (SubscriptionStatus.ACTIVE.value,)
        with self._get_conn() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def active_subscriptions(self) -> List[Subscription]:
        """Get all active subscriptions"""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE status = ? ORDER BY user_id, id",
                (SubscriptionStatus.ACTIVE.value,)
            ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    # Statistics operations
    def get_stats(self) -> dict:
        """Get overall statistics"""
        with self._get_conn() as conn:
            user_count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            unit_count = conn.execute("SELECT COUNT(*) FROM units").fetchone()[0]
            available_count = conn.execute(
                "SELECT COUNT(*) FROM units WHERE available = 1"
            ).fetchone()[0]
            active_count = conn.execute(
                "SELECT COUNT(*) FROM subscriptions WHERE status = ?",
                (SubscriptionStatus.ACTIVE.value,)
            ).fetchone()[0]
        return {
            "user_count": user_count,
            "unit_count": unit_count,
            "available_unit_count": available_count,
            "active_subscription_count": active_count,
        }
