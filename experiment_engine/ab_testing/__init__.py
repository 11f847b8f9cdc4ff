# A/B Testing Module
"""
A/Bテスト実験エンジン

実験カタログ・割り当てエンジン・コンバージョン記録・有意性分析を提供する。

設計方針:
- 実験の登録・開始・一時停止・完了のライフサイクル管理（遷移表による検証）
- 参加者ごとに冪等な割り当て（バンディット → 適応配分 → ハッシュ）
- カウンタは単一の加算操作でのみ更新し、イベントログから再計算できる
- z検定・Wilsonスコア区間による有意性分析（p値は scipy.stats）
"""

from experiment_engine.ab_testing.aggregate_store import (
    AggregateStore,
    InMemoryAggregateStore,
)
from experiment_engine.ab_testing.assignment import (
    AssignmentDecision,
    AssignmentSource,
    VariantAssignmentEngine,
)
from experiment_engine.ab_testing.catalog import (
    ExperimentCatalog,
    InMemoryExperimentCatalog,
    PostgresExperimentCatalog,
)
from experiment_engine.ab_testing.conversion import ConversionRecorder
from experiment_engine.ab_testing.errors import (
    ConcurrentModificationError,
    DuplicateExperimentError,
    ExperimentConfigurationError,
    ExperimentError,
    ExperimentNotFoundError,
    ExperimentNotRunningError,
    ExperimentStateError,
    GoalNotFoundError,
    InvalidTrafficPercentageError,
    InvalidTransitionError,
    NoAssignmentError,
    StorageError,
    VariantNotFoundError,
)
from experiment_engine.ab_testing.events import EventPublisher, ExperimentEvent
from experiment_engine.ab_testing.models import (
    Assignment,
    Conversion,
    Experiment,
    ExperimentStatus,
    Variant,
    VariantCounts,
)
from experiment_engine.ab_testing.postgres_store import PostgresAggregateStore
from experiment_engine.ab_testing.service import ExperimentResults, ExperimentService
from experiment_engine.ab_testing.significance import (
    ExperimentAction,
    ExperimentRisk,
    SignificanceEngine,
    SignificanceReport,
    VariantSignificance,
)

__all__ = [
    # サービス
    "ExperimentService",
    "ExperimentResults",
    # モデル
    "Experiment",
    "ExperimentStatus",
    "Variant",
    "Assignment",
    "Conversion",
    "VariantCounts",
    # ストア・カタログ
    "AggregateStore",
    "InMemoryAggregateStore",
    "PostgresAggregateStore",
    "ExperimentCatalog",
    "InMemoryExperimentCatalog",
    "PostgresExperimentCatalog",
    # エンジン
    "VariantAssignmentEngine",
    "AssignmentDecision",
    "AssignmentSource",
    "ConversionRecorder",
    "SignificanceEngine",
    "SignificanceReport",
    "VariantSignificance",
    "ExperimentAction",
    "ExperimentRisk",
    "EventPublisher",
    "ExperimentEvent",
    # 例外
    "ExperimentError",
    "ExperimentConfigurationError",
    "ExperimentNotFoundError",
    "DuplicateExperimentError",
    "VariantNotFoundError",
    "GoalNotFoundError",
    "InvalidTrafficPercentageError",
    "ExperimentStateError",
    "InvalidTransitionError",
    "ExperimentNotRunningError",
    "NoAssignmentError",
    "ConcurrentModificationError",
    "StorageError",
]
