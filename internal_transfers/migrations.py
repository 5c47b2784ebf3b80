"""
Database Migration System

Simple migration system for managing the ledger schema without external dependencies.
Supports both PostgreSQL and SQLite backends; the in-memory backend only
records versions.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib

from .logging_config import get_logger
from .storage import LedgerStorage


logger = get_logger("transfers.migrations")


class Migration:
    """Represents a single database migration with per-dialect statements"""

    def __init__(self, version: int, name: str, up: Dict[str, List[str]],
                 down: Optional[Dict[str, List[str]]] = None):
        self.version = version
        self.name = name
        self.up = up
        self.down = down or {}
        self.applied_at: Optional[datetime] = None

    def up_statements(self, dialect: str) -> List[str]:
        return self.up.get(dialect, [])

    def down_statements(self, dialect: str) -> List[str]:
        return self.down.get(dialect, [])

    @property
    def checksum(self) -> str:
        """Checksum over every dialect's up statements"""
        digest = hashlib.md5()
        for dialect in sorted(self.up):
            for statement in self.up[dialect]:
                digest.update(dialect.encode())
                digest.update(" ".join(statement.split()).encode())
        return digest.hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


INITIAL_SCHEMA = Migration(
    1, "Create accounts and transactions",
    up={
        "postgresql": [
            """
            CREATE TABLE IF NOT EXISTS accounts (
                account_id BIGINT PRIMARY KEY,
                balance NUMERIC(30,10) NOT NULL CHECK (balance >= 0)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id BIGSERIAL PRIMARY KEY,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                source_account_id BIGINT NOT NULL,
                destination_account_id BIGINT NOT NULL,
                amount NUMERIC(30,10) NOT NULL CHECK (amount > 0),
                status TEXT NOT NULL CHECK (status IN ('succeeded', 'failed')),
                error_message TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_transactions_source ON transactions(source_account_id)",
            "CREATE INDEX IF NOT EXISTS idx_transactions_destination ON transactions(destination_account_id)",
        ],
        "sqlite": [
            # Decimals are stored as fixed-point text; the casts only back up the engine's checks
            """
            CREATE TABLE IF NOT EXISTS accounts (
                account_id INTEGER PRIMARY KEY,
                balance TEXT NOT NULL CHECK (CAST(balance AS REAL) >= 0)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                source_account_id INTEGER NOT NULL,
                destination_account_id INTEGER NOT NULL,
                amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
                status TEXT NOT NULL CHECK (status IN ('succeeded', 'failed')),
                error_message TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_transactions_source ON transactions(source_account_id)",
            "CREATE INDEX IF NOT EXISTS idx_transactions_destination ON transactions(destination_account_id)",
        ],
    },
    down={
        "postgresql": ["DROP TABLE IF EXISTS transactions", "DROP TABLE IF EXISTS accounts"],
        "sqlite": ["DROP TABLE IF EXISTS transactions", "DROP TABLE IF EXISTS accounts"],
    }
)


class MigrationManager:
    """Manages database migrations"""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage
        self.migrations: List[Migration] = []
        self.add_migration(INITIAL_SCHEMA)

    def add_migration(self, migration: Migration) -> None:
        """Add a migration to the manager"""
        if any(m.version == migration.version for m in self.migrations):
            raise ValueError(f"Duplicate migration version {migration.version}")
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        return self.storage.applied_migrations()

    def get_current_version(self) -> int:
        """Get the current database version"""
        versions = [m["version"] for m in self.get_applied_migrations()]
        return max(versions) if versions else 0

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)

        return [m for m in self.migrations if current_version < m.version <= max_version]

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            try:
                logger.info(f"Applying {migration}")
                self.storage.apply_migration(
                    migration.version, migration.name, migration.checksum,
                    migration.up_statements(self.storage.dialect)
                )
                migration.applied_at = datetime.now(timezone.utc)
                applied.append(migration)
                logger.info(f"Successfully applied {migration}")

            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise RuntimeError(f"Migration failed: {migration}") from e

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rollback_migrations = [
            m for m in reversed(self.migrations)
            if target_version < m.version <= current_version
        ]
        rolledback = []

        logger.info(f"Rolling back {len(rollback_migrations)} migrations")

        for migration in rollback_migrations:
            try:
                logger.info(f"Rolling back {migration}")
                self.storage.revert_migration(
                    migration.version, migration.down_statements(self.storage.dialect)
                )
                migration.applied_at = None
                rolledback.append(migration)
                logger.info(f"Successfully rolled back {migration}")

            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise RuntimeError(f"Rollback failed: {migration}") from e

        return rolledback

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied_migration in self.get_applied_migrations():
            version = applied_migration["version"]
            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            if applied_migration.get("checksum") != migration.checksum:
                logger.error(
                    f"Checksum mismatch for v{version}: expected {migration.checksum}, "
                    f"got {applied_migration.get('checksum')}"
                )
                return False

        logger.info("All applied migrations validated successfully")
        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()

        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(self.get_applied_migrations()),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
