"""Base repository pattern for database operations.

Provides the common CRUD operations shared by every table-backed
repository. Column order is declared once per repository so rows can be
mapped positionally.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses declare ``columns`` (first entry is the primary key) and
    implement row/entity conversion, while inheriting:
    - Connection management
    - Upsert, lookup, delete and count
    - Logging patterns
    """

    columns: Sequence[str] = ()

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
        """
        if not self.columns:
            raise RepositoryError(f"{type(self).__name__} declares no columns")

        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @property
    def id_column(self) -> str:
        return self.columns[0]

    @property
    def select_list(self) -> str:
        return ", ".join(self.columns)

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row (in ``columns`` order) to entity."""
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to a mapping of column name to value."""
        pass

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID.

        Args:
            entity_id: Entity identifier

        Returns:
            Entity if found, None otherwise
        """
        rows = self.find_where(f"{self.id_column} = %s", (entity_id,), limit=1)
        return rows[0] if rows else None

    def find_where(
        self,
        condition: str,
        params: Sequence[Any],
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        """Find entities matching a SQL condition.

        Args:
            condition: WHERE clause body with %s placeholders
            params: Values for the placeholders
            order_by: Optional ORDER BY clause body
            limit: Optional maximum number of rows

        Returns:
            List of entities
        """
        query = f"SELECT {self.select_list} FROM {self.table_name} WHERE {condition}"
        values = list(params)
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT %s"
            values.append(limit)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, values)
                rows = cur.fetchall()

        return [self._row_to_entity(row) for row in rows]

    def save(self, entity: T, cur=None) -> T:
        """Save entity (insert or update).

        Args:
            entity: Entity to save
            cur: Cursor of an enclosing transaction; when omitted the
                write runs and commits on its own connection

        Returns:
            Saved entity
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        values = list(params.values())
        placeholders = ["%s"] * len(values)

        update_clause = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in columns if col != self.id_column
        )

        query = f"""
            INSERT INTO {self.table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT ({self.id_column}) DO UPDATE SET {update_clause}
        """

        if cur is not None:
            cur.execute(query, values)
            return entity

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as own_cur:
                own_cur.execute(query, values)
            conn.commit()

        return entity

    def insert_if_absent(self, entity: T) -> bool:
        """Insert entity unless its primary key already exists.

        Returns:
            True if a row was inserted
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))

        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT ({self.id_column}) DO NOTHING"
        )

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, list(params.values()))
                inserted = cur.rowcount
            conn.commit()

        return inserted > 0

    def update_where(
        self,
        assignments: str,
        condition: str,
        params: Sequence[Any],
    ) -> int:
        """Run a conditional UPDATE and return the affected row count."""
        query = f"UPDATE {self.table_name} SET {assignments} WHERE {condition}"

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, list(params))
                affected = cur.rowcount
            conn.commit()

        return affected

    def delete_where(self, condition: str, params: Sequence[Any]) -> int:
        """Delete entities matching a condition and return how many."""
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table_name} WHERE {condition}",
                    list(params),
                )
                affected = cur.rowcount
            conn.commit()

        return affected

    def delete(self, entity_id: str) -> bool:
        """Delete entity by ID.

        Args:
            entity_id: Entity identifier

        Returns:
            True if deleted, False if not found
        """
        return self.delete_where(f"{self.id_column} = %s", (entity_id,)) > 0

    def count(self) -> int:
        """Count total entities.

        Returns:
            Total count
        """
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.table_name}")
                row = cur.fetchone()

        return row[0] if row else 0
