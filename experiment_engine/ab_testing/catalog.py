# 実験カタログ
"""
実験定義の保存と検索

エンジンは find_experiment で実験を参照し、ステータス変更だけを save_status で書き戻す。
save_status は expected_version による楽観的ロックで、同時のステータス変更を検出する。
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json

from experiment_engine.ab_testing.errors import (
    ConcurrentModificationError,
    DuplicateExperimentError,
    ExperimentNotFoundError,
    StorageError,
)
from experiment_engine.ab_testing.models import Experiment, ExperimentStatus, Variant
from experiment_engine.db.connection import DatabaseConnection


logger = logging.getLogger(__name__)


class ExperimentCatalog(ABC):
    """実験カタログのインターフェース"""

    @abstractmethod
    def find_experiment(self, name: str) -> Optional[Experiment]:
        """実験を名前で検索（なければNone）"""

    @abstractmethod
    def register(self, experiment: Experiment) -> Experiment:
        """実験を登録

        Raises:
            DuplicateExperimentError: 同名の実験が存在する場合
        """

    @abstractmethod
    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        limit: int = 100,
    ) -> List[Experiment]:
        """実験一覧を取得（作成日時の新しい順）"""

    @abstractmethod
    def save_status(self, experiment: Experiment, expected_version: int) -> Experiment:
        """ステータスとタイムスタンプを保存

        Args:
            experiment: with_status で作成した更新後の実験
            expected_version: 更新前のバージョン

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            ConcurrentModificationError: バージョンが一致しない場合
        """

    def get_experiment(self, name: str) -> Experiment:
        """実験を取得

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.find_experiment(name)
        if experiment is None:
            raise ExperimentNotFoundError(name)
        return experiment


class InMemoryExperimentCatalog(ExperimentCatalog):
    """インメモリ実装（テスト・単一プロセス用）"""

    def __init__(self, experiments: Optional[List[Experiment]] = None):
        self._lock = threading.Lock()
        self._experiments: Dict[str, Experiment] = {}
        for experiment in experiments or []:
            self.register(experiment)

    def find_experiment(self, name: str) -> Optional[Experiment]:
        with self._lock:
            return self._experiments.get(name)

    def register(self, experiment: Experiment) -> Experiment:
        with self._lock:
            if experiment.name in self._experiments:
                raise DuplicateExperimentError(experiment.name)
            self._experiments[experiment.name] = experiment
        return experiment

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        limit: int = 100,
    ) -> List[Experiment]:
        with self._lock:
            experiments = list(self._experiments.values())
        if status is not None:
            experiments = [e for e in experiments if e.status == status]
        experiments.sort(key=lambda e: e.created_at, reverse=True)
        return experiments[:limit]

    def save_status(self, experiment: Experiment, expected_version: int) -> Experiment:
        with self._lock:
            current = self._experiments.get(experiment.name)
            if current is None:
                raise ExperimentNotFoundError(experiment.name)
            if current.version != expected_version:
                raise ConcurrentModificationError(
                    experiment.name, expected_version, current.version
                )
            self._experiments[experiment.name] = experiment
        return experiment


_SELECT_COLUMNS = """
    SELECT name, description, variants, traffic_percentage, goals,
           status, metadata, version, created_at, started_at, ended_at
    FROM ab_experiments
"""


class PostgresExperimentCatalog(ExperimentCatalog):
    """ab_experiments テーブルを使ったカタログ

    Attributes:
        db: データベース接続
    """

    def __init__(self, db_connection: DatabaseConnection):
        self.db = db_connection

    def find_experiment(self, name: str) -> Optional[Experiment]:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(_SELECT_COLUMNS + " WHERE name = %s", (name,))
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to load experiment '{name}': {e}") from e

        if row is None:
            return None
        return self._row_to_experiment(row)

    def register(self, experiment: Experiment) -> Experiment:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ab_experiments
                    (name, description, variants, traffic_percentage, goals,
                     status, metadata, version, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (name) DO NOTHING
                    RETURNING name
                    """,
                    (
                        experiment.name,
                        experiment.description,
                        Json([
                            {"name": v.name, "weight": v.weight, "metadata": v.metadata}
                            for v in experiment.variants
                        ]),
                        experiment.traffic_percentage,
                        Json(list(experiment.goals)),
                        experiment.status.value,
                        Json(experiment.metadata),
                        experiment.version,
                        experiment.created_at,
                    ),
                )
                inserted = cur.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to register experiment '{experiment.name}': {e}") from e

        if inserted is None:
            raise DuplicateExperimentError(experiment.name)
        return experiment

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        limit: int = 100,
    ) -> List[Experiment]:
        try:
            with self.db.get_cursor() as cur:
                if status:
                    cur.execute(
                        _SELECT_COLUMNS
                        + " WHERE status = %s ORDER BY created_at DESC LIMIT %s",
                        (status.value, limit),
                    )
                else:
                    cur.execute(
                        _SELECT_COLUMNS + " ORDER BY created_at DESC LIMIT %s",
                        (limit,),
                    )
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to list experiments: {e}") from e

        return [self._row_to_experiment(row) for row in rows]

    def save_status(self, experiment: Experiment, expected_version: int) -> Experiment:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    UPDATE ab_experiments
                    SET status = %s, started_at = %s, ended_at = %s, version = %s
                    WHERE name = %s AND version = %s
                    """,
                    (
                        experiment.status.value,
                        experiment.started_at,
                        experiment.ended_at,
                        experiment.version,
                        experiment.name,
                        expected_version,
                    ),
                )
                updated = cur.rowcount
                actual_version = None
                if updated == 0:
                    cur.execute(
                        "SELECT version FROM ab_experiments WHERE name = %s",
                        (experiment.name,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise ExperimentNotFoundError(experiment.name)
                    actual_version = row[0]
        except psycopg2.Error as e:
            raise StorageError(
                f"Failed to update status of experiment '{experiment.name}': {e}"
            ) from e

        if updated == 0:
            raise ConcurrentModificationError(
                experiment.name, expected_version, actual_version
            )
        return experiment

    # ===== Private Methods =====

    def _row_to_experiment(self, row: tuple) -> Experiment:
        """DBの行データを Experiment に変換"""
        variants = row[2] if isinstance(row[2], list) else json.loads(row[2])
        goals = row[4] if isinstance(row[4], list) else json.loads(row[4] or "[]")
        metadata: Any = row[6] if isinstance(row[6], dict) else json.loads(row[6] or "{}")
        return Experiment(
            name=row[0],
            description=row[1],
            variants=tuple(
                Variant(
                    name=v["name"],
                    weight=float(v.get("weight", 1.0)),
                    metadata=v.get("metadata") or {},
                )
                for v in variants
            ),
            traffic_percentage=float(row[3]),
            goals=tuple(goals),
            status=ExperimentStatus.parse(row[5]),
            metadata=metadata,
            version=int(row[7]),
            created_at=row[8],
            started_at=row[9],
            ended_at=row[10],
        )
