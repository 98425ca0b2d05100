from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.services.errors import DuplicateToken, IndexReadError, IndexWriteError
from logger_config import setup_logger

logger = setup_logger()


@dataclass(frozen=True)
class TokenRecord:
    token: str
    display_name: str
    canonical_path: str


class TokenIndex:
    """Persistent token -> stored file mapping.

    Lookups match the canonical path exactly; callers enumerate concrete paths
    before asking for them.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> 'TokenIndex':
        return cls(create_engine(database_url, pool_pre_ping=True))

    def create_table(self):
        with self.engine.begin() as conn:
            conn.execute(text('''
                CREATE TABLE IF NOT EXISTS tokens (
                    token VARCHAR(255) PRIMARY KEY NOT NULL,
                    display_name VARCHAR(255) NOT NULL,
                    canonical_path VARCHAR(1024) NOT NULL UNIQUE
                )
            '''))

    def put(self, token: str, display_name: str, canonical_path: str) -> TokenRecord:
        try:
            with self.engine.begin() as conn:
                conn.execute(text('''
                    INSERT INTO tokens (token, display_name, canonical_path)
                    VALUES (:token, :display_name, :canonical_path)
                '''), {
                    "token": token,
                    "display_name": display_name,
                    "canonical_path": canonical_path,
                })
        except IntegrityError as e:
            try:
                existing = self.find_by_token(token)
            except IndexReadError as read_error:
                raise IndexWriteError(f"Database error: {read_error}") from e
            if existing is not None:
                raise DuplicateToken(f"Token already exists: {token}") from e
            raise IndexWriteError(f"Path already indexed: {canonical_path}") from e
        except SQLAlchemyError as e:
            raise IndexWriteError(f"Database error: {e}") from e
        return TokenRecord(token, display_name, canonical_path)

    def find_by_token(self, token: str) -> Optional[TokenRecord]:
        return self._find_one('''
            SELECT token, display_name, canonical_path
            FROM tokens
            WHERE token = :value
        ''', token)

    def find_by_path(self, canonical_path: str) -> Optional[TokenRecord]:
        return self._find_one('''
            SELECT token, display_name, canonical_path
            FROM tokens
            WHERE canonical_path = :value
        ''', canonical_path)

    def _find_one(self, query: str, value: str) -> Optional[TokenRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(text(query), {"value": value}).fetchone()
        except SQLAlchemyError as e:
            raise IndexReadError(f"Database error: {e}") from e
        return TokenRecord(*row) if row else None

    def delete_by_path(self, canonical_path: str) -> bool:
        return self.delete_by_paths([canonical_path]) > 0

    def delete_by_paths(self, canonical_paths: Iterable[str]) -> int:
        """Remove the records of every given path in a single transaction."""
        params = [{"canonical_path": path} for path in canonical_paths]
        if not params:
            return 0
        deleted = 0
        try:
            with self.engine.begin() as conn:
                for param in params:
                    result = conn.execute(text('''
                        DELETE FROM tokens WHERE canonical_path = :canonical_path
                    '''), param)
                    deleted += result.rowcount
        except SQLAlchemyError as e:
            raise IndexWriteError(f"Database error: {e}") from e
        return deleted

    def restore(self, records: Iterable[TokenRecord]):
        """Re-insert records removed by a delete whose filesystem half failed."""
        try:
            with self.engine.begin() as conn:
                for record in records:
                    conn.execute(text('''
                        INSERT INTO tokens (token, display_name, canonical_path)
                        VALUES (:token, :display_name, :canonical_path)
                    '''), {
                        "token": record.token,
                        "display_name": record.display_name,
                        "canonical_path": record.canonical_path,
                    })
        except SQLAlchemyError as e:
            raise IndexWriteError(f"Database error: {e}") from e

    def find_by_paths(self, canonical_paths: Iterable[str]) -> list:
        records = []
        for path in canonical_paths:
            record = self.find_by_path(path)
            if record is not None:
                records.append(record)
        return records

    def dispose(self):
        self.engine.dispose()
