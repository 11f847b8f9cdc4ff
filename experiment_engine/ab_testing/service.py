# A/Bテストサービス
"""
ExperimentService: アプリケーション層から使う A/B テストの窓口

カタログ・集計ストア・設定・イベント配信・乱数・時計をコンストラクタで受け取り、
割り当て、コンバージョン記録、結果集計、ステータス遷移を提供する。

設計方針:
- 依存性注入: グローバル状態を持たず、すべての協調オブジェクトを引数で受け取る
- 記録が先、通知は後: イベントは書き込み成功後にだけ配信し、配信失敗は呼び出し元に影響しない
- 劣化の方向: 割り当ての判定経路は control にフォールバックしても、記録の失敗は必ず送出する
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from experiment_engine.ab_testing import events
from experiment_engine.ab_testing.aggregate_store import AggregateStore
from experiment_engine.ab_testing.assignment import (
    AssignmentDecision,
    VariantAssignmentEngine,
)
from experiment_engine.ab_testing.catalog import ExperimentCatalog
from experiment_engine.ab_testing.conversion import ConversionRecorder
from experiment_engine.ab_testing.errors import ExperimentConfigurationError
from experiment_engine.ab_testing.events import EventPublisher
from experiment_engine.ab_testing.models import (
    Experiment,
    ExperimentStatus,
    Variant,
    VariantCounts,
    utcnow,
)
from experiment_engine.ab_testing.significance import (
    ExperimentAction,
    ExperimentRisk,
    SignificanceEngine,
    SignificanceReport,
)
from experiment_engine.ab_testing.status_machine import transition
from experiment_engine.config.ab_config import ABTestingConfig


logger = logging.getLogger(__name__)

VariantDefinition = Union[str, Variant, Dict[str, Any]]


@dataclass
class ExperimentResults:
    """実験結果

    Attributes:
        experiment: 実験定義
        per_variant: バリアント別カウンタ
        significance: 有意性レポート
        goal_completions: ゴール別・バリアント別のコンバージョン数
        risks: 運用リスク
        actions: データに基づく運用アクションの提案
    """
    experiment: Experiment
    per_variant: Dict[str, VariantCounts]
    significance: SignificanceReport
    goal_completions: Dict[str, Dict[str, int]] = field(default_factory=dict)
    risks: List[ExperimentRisk] = field(default_factory=list)
    actions: List[ExperimentAction] = field(default_factory=list)

    @property
    def participants(self) -> int:
        return self.significance.total_participants

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.experiment.name,
            "status": self.experiment.status.value,
            "started_at": (
                self.experiment.started_at.isoformat() if self.experiment.started_at else None
            ),
            "participants": self.participants,
            "per_variant": {
                name: counts.to_dict() for name, counts in self.per_variant.items()
            },
            "significance": self.significance.to_dict(),
            "goal_completions": self.goal_completions,
            "risks": [risk.to_dict() for risk in self.risks],
            "actions": [action.to_dict() for action in self.actions],
        }


class ExperimentService:
    """A/Bテストサービス

    使用例:
        service = ExperimentService(InMemoryExperimentCatalog(), InMemoryAggregateStore())
        service.register_experiment("checkout-button", ["A", "B"])
        service.transition_status("checkout-button", "running")

        variant = service.assign_variant("checkout-button", "user_001")
        service.record_conversion("checkout-button", "user_001", "completed_purchase")

        results = service.experiment_results("checkout-button")
        results.significance.variants["B"].is_significant

    Attributes:
        catalog: 実験カタログ
        store: 集計ストア
        config: A/Bテスト設定
        publisher: イベント配信（Noneの場合は配信しない）
    """

    def __init__(
        self,
        catalog: ExperimentCatalog,
        store: AggregateStore,
        config: Optional[ABTestingConfig] = None,
        publisher: Optional[EventPublisher] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """ExperimentServiceを初期化

        Args:
            catalog: 実験カタログ
            store: 集計ストア
            config: 設定。Noneの場合はデフォルト設定を使用。
            publisher: イベント配信
            rng: 割り当てに使う乱数生成器
            clock: 現在時刻を返す関数
        """
        self.catalog = catalog
        self.store = store
        self.config = config or ABTestingConfig()
        self.publisher = publisher
        self._clock = clock or utcnow

        self.assignment_engine = VariantAssignmentEngine(store, self.config, rng)
        self.conversion_recorder = ConversionRecorder(store, self.config)
        self.significance_engine = SignificanceEngine(store, self.config)

    # ===== 実験管理 =====

    def register_experiment(
        self,
        name: str,
        variants: Iterable[VariantDefinition],
        description: Optional[str] = None,
        traffic_percentage: float = 100,
        goals: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Experiment:
        """実験を draft で登録

        Args:
            name: 実験名
            variants: バリアント（名前、Variant、または {"name", "weight", "metadata"} の辞書）。
                      先頭が control。
            description: 説明
            traffic_percentage: 実験対象の割合（0-100）
            goals: ゴール名。Noneの場合は設定の default_goals

        Returns:
            登録した実験

        Raises:
            ExperimentConfigurationError: 定義が不正な場合
            DuplicateExperimentError: 同名の実験が存在する場合
        """
        experiment = Experiment(
            name=name,
            variants=tuple(self._to_variant(v) for v in variants),
            traffic_percentage=traffic_percentage,
            goals=tuple(goals) if goals is not None else self.config.default_goals,
            description=description,
            created_at=self._clock(),
            metadata=dict(metadata or {}),
        )
        self.catalog.register(experiment)
        logger.info(
            "Registered experiment '%s' with variants %s (traffic=%s%%)",
            name, experiment.variant_names, experiment.traffic_percentage,
        )
        self._publish(events.EXPERIMENT_REGISTERED, name, {
            "variants": experiment.variant_names,
            "traffic_percentage": experiment.traffic_percentage,
            "goals": list(experiment.goals),
        })
        return experiment

    def get_experiment(self, experiment_name: str) -> Experiment:
        """実験を取得

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        return self.catalog.get_experiment(experiment_name)

    def list_experiments(
        self,
        status: Optional[Union[ExperimentStatus, str]] = None,
        limit: int = 100,
    ) -> List[Experiment]:
        status = ExperimentStatus.parse(status) if status is not None else None
        return self.catalog.list_experiments(status=status, limit=limit)

    def is_running(self, experiment_name: str) -> bool:
        experiment = self.catalog.find_experiment(experiment_name)
        return experiment is not None and experiment.is_running

    def transition_status(
        self,
        experiment_name: str,
        target_status: Union[ExperimentStatus, str],
    ) -> Experiment:
        """実験のステータスを遷移

        Returns:
            更新後の実験

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidTransitionError: 遷移表にない遷移の場合（保存済みのステータスは変わらない）
            ConcurrentModificationError: 同時にステータスが変更された場合
        """
        experiment = self.catalog.get_experiment(experiment_name)
        new_status = transition(experiment.status, target_status)
        updated = experiment.with_status(new_status, self._clock())
        self.catalog.save_status(updated, expected_version=experiment.version)

        logger.info(
            "Experiment '%s' transitioned: %s -> %s",
            experiment_name, experiment.status.value, new_status.value,
        )
        self._publish(events.EXPERIMENT_STATUS_CHANGED, experiment_name, {
            "from": experiment.status.value,
            "to": new_status.value,
            "version": updated.version,
        })
        return updated

    def start_experiment(self, experiment_name: str) -> Experiment:
        return self.transition_status(experiment_name, ExperimentStatus.RUNNING)

    def pause_experiment(self, experiment_name: str) -> Experiment:
        return self.transition_status(experiment_name, ExperimentStatus.PAUSED)

    def resume_experiment(self, experiment_name: str) -> Experiment:
        return self.transition_status(experiment_name, ExperimentStatus.RUNNING)

    def complete_experiment(self, experiment_name: str) -> Experiment:
        return self.transition_status(experiment_name, ExperimentStatus.COMPLETED)

    # ===== 割り当て・コンバージョン =====

    def assign(
        self,
        experiment_name: str,
        participant_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> AssignmentDecision:
        """割り当てを行い、決定経路を含む結果を返す

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            ExperimentConfigurationError: participant_id が空の場合
            StorageError: 割り当ての記録に失敗した場合
        """
        self._require_participant(participant_id)
        experiment = self.catalog.get_experiment(experiment_name)
        decision = self.assignment_engine.assign(experiment, participant_id, context)

        if decision.assignment is not None and decision.assignment.is_new:
            self._publish(events.VARIANT_ASSIGNED, experiment_name, {
                "participant_id": participant_id,
                "variant": decision.variant,
                "source": decision.source.value,
                "context": dict(context or {}),
            })
        return decision

    def assign_variant(
        self,
        experiment_name: str,
        participant_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """参加者にバリアントを割り当て、バリアント名を返す

        実験が running でない場合は control を返す（エラーにしない）。
        """
        return self.assign(experiment_name, participant_id, context).variant

    def record_conversion(
        self,
        experiment_name: str,
        participant_id: str,
        goal_name: str,
    ) -> None:
        """コンバージョンを記録

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            ExperimentNotRunningError: 実験がコンバージョンを受け付けない状態の場合（NoAssignmentError の一種）
            GoalNotFoundError: 実験に定義されていないゴールの場合
            NoAssignmentError: 参加者に割り当てがない場合
            StorageError: ストレージ障害
        """
        self._require_participant(participant_id)
        experiment = self.catalog.get_experiment(experiment_name)
        conversion = self.conversion_recorder.record(experiment, participant_id, goal_name)
        self._publish(events.CONVERSION_TRACKED, experiment_name, {
            "participant_id": participant_id,
            "goal": goal_name,
            "variant": conversion.variant_name,
        })

    def current_variant(self, experiment_name: str, participant_id: str) -> Optional[str]:
        """参加者の割り当て済みバリアント（未割り当てならNone）"""
        assignment = self.store.get_assignment(experiment_name, participant_id)
        return assignment.variant_name if assignment else None

    # ===== 結果 =====

    def experiment_results(
        self,
        experiment_name: str,
        goal: Optional[str] = None,
    ) -> ExperimentResults:
        """実験結果を集計

        Args:
            experiment_name: 実験名
            goal: 有意性を評価するゴール。Noneの場合は全ゴール合計

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.catalog.get_experiment(experiment_name)
        counts = self.store.read_counts(experiment.name, experiment.variant_names)
        report = self.significance_engine.analyze(experiment, counts, goal)

        goal_names = list(experiment.goals)
        for variant_counts in counts.values():
            for recorded_goal in variant_counts.conversions:
                if recorded_goal not in goal_names:
                    goal_names.append(recorded_goal)

        goal_completions = {
            goal_name: {
                variant_name: variant_counts.conversion_count(goal_name)
                for variant_name, variant_counts in counts.items()
            }
            for goal_name in goal_names
        }

        now = self._clock()
        return ExperimentResults(
            experiment=experiment,
            per_variant=counts,
            significance=report,
            goal_completions=goal_completions,
            risks=self.significance_engine.assess_risks(experiment, report, now),
            actions=self.significance_engine.experiment_actions(
                experiment, report, self.store.list_assignments(experiment.name), now
            ),
        )

    def rebuild_counters(self, experiment_name: str) -> Dict[str, VariantCounts]:
        """イベントログからカウンタを再計算"""
        experiment = self.catalog.get_experiment(experiment_name)
        return self.store.rebuild_counters(experiment.name)

    # ===== Private Methods =====

    def _publish(self, event_type: str, experiment_name: str, payload: Dict[str, Any]) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish(event_type, experiment_name, payload)
        except Exception:
            # 書き込みは確定済み。配信の失敗は呼び出し元に返さない
            logger.warning(
                "Event publish failed: event=%s experiment=%s",
                event_type, experiment_name, exc_info=True,
            )

    @staticmethod
    def _require_participant(participant_id: str) -> None:
        if not participant_id:
            raise ExperimentConfigurationError("Participant ID is required")

    @staticmethod
    def _to_variant(definition: VariantDefinition) -> Variant:
        if isinstance(definition, Variant):
            return definition
        if isinstance(definition, str):
            return Variant(definition)
        if isinstance(definition, dict):
            if "name" not in definition:
                raise ExperimentConfigurationError(f"Variant definition requires 'name': {definition}")
            return Variant(
                name=definition["name"],
                weight=float(definition.get("weight", 1.0)),
                metadata=dict(definition.get("metadata") or {}),
            )
        raise ExperimentConfigurationError(f"Unsupported variant definition: {definition!r}")
