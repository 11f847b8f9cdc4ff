# 実験ストア用 PostgreSQL 接続プール
"""
割り当て・コンバージョンログとカウンタを置く PostgreSQL への接続

get_connection / get_cursor の 1 コンテキストが 1 トランザクションになる。
ログ行の INSERT とカウンタの UPDATE は同じコンテキスト内で行うこと。
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Generator, Optional

from psycopg2 import pool
from psycopg2.extensions import connection as PsycopgConnection


logger = logging.getLogger(__name__)


class DatabaseConnection:
    """ThreadedConnectionPool のラッパー

    プールは最初の get_connection で開く。database_url 省略時は DATABASE_URL を読む。
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        min_connections: int = 1,
        max_connections: int = 10,
        application_name: str = "experiment-engine",
    ):
        self.database_url = database_url or os.getenv("DATABASE_URL")
        if not self.database_url:
            raise ValueError("No database URL given and DATABASE_URL is not set")

        if min_connections < 1 or max_connections < min_connections:
            raise ValueError(
                f"Invalid pool size: min={min_connections}, max={max_connections}"
            )

        self.min_connections = min_connections
        self.max_connections = max_connections
        self.application_name = application_name
        self._pool: Optional[pool.ThreadedConnectionPool] = None

    def _get_pool(self) -> pool.ThreadedConnectionPool:
        if self._pool is None:
            logger.info(
                "Opening connection pool (min=%d, max=%d)",
                self.min_connections,
                self.max_connections,
            )
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.min_connections,
                maxconn=self.max_connections,
                dsn=self.database_url,
                application_name=self.application_name,
            )
        return self._pool

    @contextmanager
    def get_connection(
        self, auto_commit: bool = True
    ) -> Generator[PsycopgConnection, None, None]:
        """プールから接続を借りる

        ブロックを抜けたら commit。例外（KeyboardInterrupt を含む）なら rollback して再送出。
        """
        connection = self._get_pool().getconn()
        try:
            yield connection
            if auto_commit:
                connection.commit()
        except BaseException:
            connection.rollback()
            raise
        finally:
            self._get_pool().putconn(connection)

    @contextmanager
    def get_cursor(self, auto_commit: bool = True) -> Generator[Any, None, None]:
        with self.get_connection(auto_commit=auto_commit) as conn:
            with conn.cursor() as cur:
                yield cur

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def health_check(self) -> bool:
        """SELECT 1 が通れば True（失敗は警告ログのみ）"""
        try:
            with self.get_cursor() as cur:
                cur.execute("SELECT 1")
                result = cur.fetchone()
                return result is not None and result[0] == 1
        except Exception:
            logger.warning("Database health check failed", exc_info=True)
            return False

    def __enter__(self) -> "DatabaseConnection":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
