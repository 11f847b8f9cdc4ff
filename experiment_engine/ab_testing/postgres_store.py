# PostgreSQL 集計ストア
"""
AggregateStore の PostgreSQL 実装

- 割り当て: INSERT ... ON CONFLICT (experiment_name, participant_id) DO NOTHING RETURNING
  で一意制約による upsert。競合した場合は保存済みの割り当てを返す
- カウンタ: INSERT ... ON CONFLICT DO UPDATE SET n = n + 1 の単一文で加算
- 割り当て記録とカウンタ加算は同一トランザクション（例外時はrollback）
- psycopg2.Error は StorageError に変換して再送出
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, List, Optional

import psycopg2
from psycopg2.extras import Json

from experiment_engine.ab_testing.aggregate_store import AggregateStore
from experiment_engine.ab_testing.errors import NoAssignmentError, StorageError
from experiment_engine.ab_testing.models import (
    Assignment,
    Conversion,
    VariantCounts,
    fill_counts,
)
from experiment_engine.db.connection import DatabaseConnection


logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors(operation: str) -> Generator[None, None, None]:
    """psycopg2 の例外を StorageError に変換"""
    try:
        yield
    except psycopg2.Error as e:
        logger.warning("Storage operation '%s' failed: %s", operation, e)
        raise StorageError(f"Storage operation '{operation}' failed: {e}") from e


class PostgresAggregateStore(AggregateStore):
    """PostgreSQL を使った集計ストア

    使用例:
        db = DatabaseConnection()
        store = PostgresAggregateStore(db)
        assignment = store.record_assignment("checkout-button", "A", "user_001")

    Attributes:
        db: データベース接続
    """

    def __init__(self, db_connection: DatabaseConnection):
        self.db = db_connection

    def record_assignment(
        self,
        experiment_name: str,
        variant_name: str,
        participant_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Assignment:
        context = dict(context or {})
        with _storage_errors("record_assignment"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ab_assignments
                    (experiment_name, participant_id, variant_name, context)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (experiment_name, participant_id) DO NOTHING
                    RETURNING variant_name, assigned_at, context
                    """,
                    (experiment_name, participant_id, variant_name, Json(context)),
                )
                row = cur.fetchone()

                if row is None:
                    # 既に割り当て済み（同時リクエストを含む）: 保存済みの値を返す
                    cur.execute(
                        """
                        SELECT variant_name, assigned_at, context
                        FROM ab_assignments
                        WHERE experiment_name = %s AND participant_id = %s
                        """,
                        (experiment_name, participant_id),
                    )
                    existing = cur.fetchone()
                    if existing is None:
                        raise StorageError(
                            f"Assignment for participant '{participant_id}' "
                            f"in '{experiment_name}' conflicted but could not be read"
                        )
                    return self._row_to_assignment(
                        experiment_name, participant_id, existing, is_new=False
                    )

                cur.execute(
                    """
                    INSERT INTO ab_variant_counters
                    (experiment_name, variant_name, assignments)
                    VALUES (%s, %s, 1)
                    ON CONFLICT (experiment_name, variant_name)
                    DO UPDATE SET assignments = ab_variant_counters.assignments + 1
                    """,
                    (experiment_name, variant_name),
                )

        return self._row_to_assignment(experiment_name, participant_id, row, is_new=True)

    def record_conversion(
        self,
        experiment_name: str,
        participant_id: str,
        goal: str,
    ) -> Conversion:
        with _storage_errors("record_conversion"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    SELECT variant_name
                    FROM ab_assignments
                    WHERE experiment_name = %s AND participant_id = %s
                    """,
                    (experiment_name, participant_id),
                )
                row = cur.fetchone()
                if row is None:
                    raise NoAssignmentError(experiment_name, participant_id)
                variant_name = row[0]

                cur.execute(
                    """
                    INSERT INTO ab_conversions
                    (experiment_name, participant_id, goal, variant_name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING converted_at
                    """,
                    (experiment_name, participant_id, goal, variant_name),
                )
                converted_at = cur.fetchone()[0]

                cur.execute(
                    """
                    INSERT INTO ab_goal_counters
                    (experiment_name, variant_name, goal, conversions)
                    VALUES (%s, %s, %s, 1)
                    ON CONFLICT (experiment_name, variant_name, goal)
                    DO UPDATE SET conversions = ab_goal_counters.conversions + 1
                    """,
                    (experiment_name, variant_name, goal),
                )

        return Conversion(
            experiment_name=experiment_name,
            participant_id=participant_id,
            goal=goal,
            variant_name=variant_name,
            converted_at=converted_at,
        )

    def get_assignment(
        self,
        experiment_name: str,
        participant_id: str,
    ) -> Optional[Assignment]:
        with _storage_errors("get_assignment"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    SELECT variant_name, assigned_at, context
                    FROM ab_assignments
                    WHERE experiment_name = %s AND participant_id = %s
                    """,
                    (experiment_name, participant_id),
                )
                row = cur.fetchone()

        if row is None:
            return None
        return self._row_to_assignment(experiment_name, participant_id, row, is_new=False)

    def read_counts(
        self,
        experiment_name: str,
        variant_names: Optional[Iterable[str]] = None,
    ) -> Dict[str, VariantCounts]:
        with _storage_errors("read_counts"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    SELECT variant_name, assignments
                    FROM ab_variant_counters
                    WHERE experiment_name = %s
                    """,
                    (experiment_name,),
                )
                assignment_rows = cur.fetchall()

                cur.execute(
                    """
                    SELECT variant_name, goal, conversions
                    FROM ab_goal_counters
                    WHERE experiment_name = %s
                    """,
                    (experiment_name,),
                )
                goal_rows = cur.fetchall()

        counts: Dict[str, VariantCounts] = {}
        for variant_name, assignments in assignment_rows:
            counts.setdefault(variant_name, VariantCounts()).assignments = int(assignments)
        for variant_name, goal, conversions in goal_rows:
            counts.setdefault(variant_name, VariantCounts()).conversions[goal] = int(conversions)

        if variant_names is not None:
            counts = fill_counts(counts, variant_names)
        return counts

    def list_assignments(self, experiment_name: str) -> List[Assignment]:
        with _storage_errors("list_assignments"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    SELECT participant_id, variant_name, assigned_at, context
                    FROM ab_assignments
                    WHERE experiment_name = %s
                    ORDER BY id
                    """,
                    (experiment_name,),
                )
                rows = cur.fetchall()

        return [
            self._row_to_assignment(experiment_name, row[0], row[1:], is_new=False)
            for row in rows
        ]

    def list_conversions(self, experiment_name: str) -> List[Conversion]:
        with _storage_errors("list_conversions"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    SELECT participant_id, goal, variant_name, converted_at
                    FROM ab_conversions
                    WHERE experiment_name = %s
                    ORDER BY id
                    """,
                    (experiment_name,),
                )
                rows = cur.fetchall()

        return [
            Conversion(
                experiment_name=experiment_name,
                participant_id=participant_id,
                goal=goal,
                variant_name=variant_name,
                converted_at=converted_at,
            )
            for participant_id, goal, variant_name, converted_at in rows
        ]

    def rebuild_counters(self, experiment_name: str) -> Dict[str, VariantCounts]:
        with _storage_errors("rebuild_counters"):
            with self.db.get_cursor() as cur:
                cur.execute(
                    "DELETE FROM ab_variant_counters WHERE experiment_name = %s",
                    (experiment_name,),
                )
                cur.execute(
                    "DELETE FROM ab_goal_counters WHERE experiment_name = %s",
                    (experiment_name,),
                )
                cur.execute(
                    """
                    INSERT INTO ab_variant_counters
                    (experiment_name, variant_name, assignments)
                    SELECT experiment_name, variant_name, COUNT(*)
                    FROM ab_assignments
                    WHERE experiment_name = %s
                    GROUP BY experiment_name, variant_name
                    """,
                    (experiment_name,),
                )
                cur.execute(
                    """
                    INSERT INTO ab_goal_counters
                    (experiment_name, variant_name, goal, conversions)
                    SELECT experiment_name, variant_name, goal, COUNT(*)
                    FROM ab_conversions
                    WHERE experiment_name = %s
                    GROUP BY experiment_name, variant_name, goal
                    """,
                    (experiment_name,),
                )

        logger.info("Rebuilt counters for experiment=%s from event log", experiment_name)
        return self.read_counts(experiment_name)

    # ===== Private Methods =====

    def _row_to_assignment(
        self,
        experiment_name: str,
        participant_id: str,
        row: tuple,
        is_new: bool,
    ) -> Assignment:
        """DBの行データ (variant_name, assigned_at, context) を Assignment に変換"""
        variant_name, assigned_at, context = row
        return Assignment(
            experiment_name=experiment_name,
            participant_id=participant_id,
            variant_name=variant_name,
            assigned_at=assigned_at,
            context=context if isinstance(context, dict) else {},
            is_new=is_new,
        )
