# 実験集計ストア
"""
割り当て・コンバージョンのイベントログと、バリアント別カウンタを管理するストア

処理フロー:
    record_assignment
        ├── (experiment, participant) の既存割り当てを確認（同一ロック内）
        ├── 既存があればそれを返す（カウンタは増やさない）
        └── なければ Assignment を追記し、assignments カウンタを +1
    record_conversion
        ├── 参加者の割り当てを取得（なければ NoAssignmentError）
        └── Conversion を追記し、(variant, goal) カウンタを +1

カウンタは単一の加算操作でのみ更新する。集計オブジェクト全体を読み出して
マージ後に書き戻すことはしない（並行書き込みで更新が失われるため）。
カウンタはイベントログから rebuild_counters で再計算できる。
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from experiment_engine.ab_testing.errors import NoAssignmentError
from experiment_engine.ab_testing.models import (
    Assignment,
    Conversion,
    VariantCounts,
    fill_counts,
    utcnow,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class AggregateStore(ABC):
    """集計ストアのインターフェース

    実装は record_assignment の重複確認と挿入、各カウンタの加算を
    それぞれ原子的に行うこと。
    """

    @abstractmethod
    def record_assignment(
        self,
        experiment_name: str,
        variant_name: str,
        participant_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Assignment:
        """割り当てを記録（参加者ごとに冪等）

        Returns:
            新規に記録した Assignment（is_new=True）、
            または既存の Assignment（is_new=False）

        Raises:
            StorageError: ストレージ障害
        """

    @abstractmethod
    def record_conversion(
        self,
        experiment_name: str,
        participant_id: str,
        goal: str,
    ) -> Conversion:
        """コンバージョンを記録

        Raises:
            NoAssignmentError: 参加者に割り当てがない場合
            StorageError: ストレージ障害
        """

    @abstractmethod
    def get_assignment(
        self,
        experiment_name: str,
        participant_id: str,
    ) -> Optional[Assignment]:
        """参加者の割り当てを取得（なければNone）"""

    @abstractmethod
    def read_counts(
        self,
        experiment_name: str,
        variant_names: Optional[Iterable[str]] = None,
    ) -> Dict[str, VariantCounts]:
        """バリアント別カウンタのスナップショットを取得

        variant_names を指定すると、データのないバリアントも0件で含める。
        各カウンタ単位では線形化可能だが、カウンタ間の一貫性は保証しない。
        """

    @abstractmethod
    def list_assignments(self, experiment_name: str) -> List[Assignment]:
        """割り当てログを記録順に取得"""

    @abstractmethod
    def list_conversions(self, experiment_name: str) -> List[Conversion]:
        """コンバージョンログを記録順に取得"""

    @abstractmethod
    def rebuild_counters(self, experiment_name: str) -> Dict[str, VariantCounts]:
        """イベントログを再生してカウンタを再計算"""


@dataclass
class _ExperimentLog:
    """1実験分のイベントログとカウンタ"""
    lock: threading.Lock = field(default_factory=threading.Lock)
    events: List[Union[Assignment, Conversion]] = field(default_factory=list)
    assignments_by_participant: Dict[str, Assignment] = field(default_factory=dict)
    assignment_counters: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    goal_counters: Dict[Tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))

    def snapshot(self) -> Dict[str, VariantCounts]:
        counts: Dict[str, VariantCounts] = {}
        for variant_name, n in self.assignment_counters.items():
            counts.setdefault(variant_name, VariantCounts()).assignments = n
        for (variant_name, goal), n in self.goal_counters.items():
            counts.setdefault(variant_name, VariantCounts()).conversions[goal] = n
        return counts


class InMemoryAggregateStore(AggregateStore):
    """インメモリ実装

    実験ごとのロックで「重複確認 + 追記 + 加算」を1つのクリティカルセクションにする。
    ロックを保持するのは単一の辞書操作と加算の間だけで、I/O は行わない。

    使用例:
        store = InMemoryAggregateStore()
        store.record_assignment("checkout-button", "A", "user_001")
        store.record_conversion("checkout-button", "user_001", "completed_purchase")
        counts = store.read_counts("checkout-button")
        # {"A": VariantCounts(assignments=1, conversions={"completed_purchase": 1})}
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._registry_lock = threading.Lock()
        self._logs: Dict[str, _ExperimentLog] = {}

    def _log(self, experiment_name: str) -> _ExperimentLog:
        with self._registry_lock:
            log = self._logs.get(experiment_name)
            if log is None:
                log = _ExperimentLog()
                self._logs[experiment_name] = log
            return log

    def record_assignment(
        self,
        experiment_name: str,
        variant_name: str,
        participant_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Assignment:
        log = self._log(experiment_name)
        with log.lock:
            existing = log.assignments_by_participant.get(participant_id)
            if existing is not None:
                return replace(existing, is_new=False)

            assignment = Assignment(
                experiment_name=experiment_name,
                participant_id=participant_id,
                variant_name=variant_name,
                assigned_at=self._clock(),
                context=dict(context or {}),
            )
            log.events.append(assignment)
            log.assignments_by_participant[participant_id] = assignment
            log.assignment_counters[variant_name] += 1

        logger.debug(
            "Recorded assignment: experiment=%s participant=%s variant=%s",
            experiment_name, participant_id, variant_name,
        )
        return assignment

    def record_conversion(
        self,
        experiment_name: str,
        participant_id: str,
        goal: str,
    ) -> Conversion:
        log = self._log(experiment_name)
        with log.lock:
            assignment = log.assignments_by_participant.get(participant_id)
            if assignment is None:
                raise NoAssignmentError(experiment_name, participant_id)

            conversion = Conversion(
                experiment_name=experiment_name,
                participant_id=participant_id,
                goal=goal,
                variant_name=assignment.variant_name,
                converted_at=self._clock(),
            )
            log.events.append(conversion)
            log.goal_counters[(assignment.variant_name, goal)] += 1

        return conversion

    def get_assignment(
        self,
        experiment_name: str,
        participant_id: str,
    ) -> Optional[Assignment]:
        log = self._log(experiment_name)
        with log.lock:
            existing = log.assignments_by_participant.get(participant_id)
        if existing is None:
            return None
        return replace(existing, is_new=False)

    def read_counts(
        self,
        experiment_name: str,
        variant_names: Optional[Iterable[str]] = None,
    ) -> Dict[str, VariantCounts]:
        log = self._log(experiment_name)
        with log.lock:
            counts = log.snapshot()
        if variant_names is not None:
            counts = fill_counts(counts, variant_names)
        return counts

    def list_assignments(self, experiment_name: str) -> List[Assignment]:
        log = self._log(experiment_name)
        with log.lock:
            return [e for e in log.events if isinstance(e, Assignment)]

    def list_conversions(self, experiment_name: str) -> List[Conversion]:
        log = self._log(experiment_name)
        with log.lock:
            return [e for e in log.events if isinstance(e, Conversion)]

    def rebuild_counters(self, experiment_name: str) -> Dict[str, VariantCounts]:
        log = self._log(experiment_name)
        with log.lock:
            log.assignment_counters = defaultdict(int)
            log.goal_counters = defaultdict(int)
            for event in log.events:
                if isinstance(event, Assignment):
                    log.assignment_counters[event.variant_name] += 1
                else:
                    log.goal_counters[(event.variant_name, event.goal)] += 1
            counts = log.snapshot()

        logger.info(
            "Rebuilt counters for experiment=%s from %d events",
            experiment_name, len(log.events),
        )
        return counts
