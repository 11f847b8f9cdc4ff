# バリアント割り当てエンジン
"""
参加者にバリアントを割り当てる

判定順（最初に決まったものを採用）:
    1. 実験が running でなければ control（記録しない）
    2. 除外フラグ（admin, beta_tester）を持つコンテキストは control（記録しない）
    3. 既存の割り当てがあればそれを返す
    4. トラフィックゲート: 参加者IDのハッシュが対象外なら control
    5. バンディット選択（Thompson風スコア）
    6. 適応配分（成績で補正した重みによる重み付き抽選）
    7. ハッシュによる決定論的選択（上記が無効・失敗した場合）

選んだバリアントは AggregateStore.record_assignment で記録してから返す。
記録に失敗した場合は StorageError をそのまま送出する（記録されていない割り当ては返さない）。
選択アルゴリズム内部の失敗は次の段階へフォールバックする。

注意: バンディットのスコアはベータ分布からのサンプリングではなく、
点推定に不確実性で重み付けした乱数を足した近似である。
"""

import hashlib
import logging
import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from experiment_engine.ab_testing.aggregate_store import AggregateStore
from experiment_engine.ab_testing.models import (
    Assignment,
    Experiment,
    Variant,
    VariantCounts,
    average_rate,
)
from experiment_engine.ab_testing.status_machine import accepts_assignments
from experiment_engine.config.ab_config import ABTestingConfig


logger = logging.getLogger(__name__)


class AssignmentSource(str, Enum):
    """割り当ての決定経路"""
    INACTIVE = "inactive"          # 実験が running でない
    EXCLUDED = "excluded"          # コンテキストの除外フラグ
    EXISTING = "existing"          # 既存の割り当て
    TRAFFIC_GATE = "traffic_gate"  # トラフィック対象外
    BANDIT = "bandit"
    ADAPTIVE = "adaptive"
    HASH = "hash"


@dataclass(frozen=True)
class AssignmentDecision:
    """割り当て結果

    Attributes:
        variant: 参加者に表示するバリアント名
        source: 決定経路
        assignment: 記録された割り当て（記録しない経路ではNone）
    """
    variant: str
    source: AssignmentSource
    assignment: Optional[Assignment] = None

    @property
    def recorded(self) -> bool:
        return self.assignment is not None


# ===== 純粋関数 =====


def traffic_bucket(participant_id: str, salt: str = "_experiment", buckets: int = 10000) -> int:
    """参加者IDを [0, buckets) に写像（SHA-256、プロセス再起動後も同じ値）"""
    digest = hashlib.sha256(f"{participant_id}{salt}".encode("utf-8")).hexdigest()
    return int(digest, 16) % buckets


def in_traffic(
    participant_id: str,
    traffic_percentage: float,
    salt: str = "_experiment",
    buckets: int = 10000,
) -> bool:
    """トラフィックゲートの判定

    バケット値が traffic_percentage * (buckets / 100) 未満なら対象。
    """
    if traffic_percentage >= 100:
        return True
    if traffic_percentage <= 0:
        return False
    threshold = traffic_percentage * buckets / 100.0
    return traffic_bucket(participant_id, salt, buckets) < threshold


def uncertainty(assignments: int, min_samples: int = 10) -> float:
    """割り当て数に応じた不確実性（データが増えるほど小さい）"""
    if assignments < min_samples:
        return 1.0
    return 1.0 / math.sqrt(assignments)


def thompson_score(
    conversion_rate: float,
    uncertainty_value: float,
    rng: random.Random,
    prior_scale: float = 100.0,
) -> float:
    """擬似ベータスコア alpha / (alpha + beta) + random() * uncertainty"""
    alpha = conversion_rate * prior_scale + 1
    beta = (1 - conversion_rate) * prior_scale + 1
    return alpha / (alpha + beta) + rng.random() * uncertainty_value


def performance_multiplier(
    counts: VariantCounts,
    experiment_average: float,
    floor: float = 0.5,
) -> float:
    """成績による重み補正倍率

    floor + (1 - floor) * (バリアント率 / 平均率)。
    データのないバリアント、または平均率0の場合は1.0。
    """
    if counts.assignments == 0 or experiment_average == 0:
        return 1.0
    ratio = counts.conversion_rate() / experiment_average
    return floor + (1 - floor) * ratio


def weighted_choice(weighted: Sequence[Tuple[str, float]], rng: random.Random) -> str:
    """累積重みの走査による重み付き抽選

    [0, total) の一様乱数に対して、累積重みが乱数を超えた最初の要素を選ぶ。
    合計重みが0以下の場合は一様に選ぶ。
    """
    if not weighted:
        raise ValueError("weighted must not be empty")

    total = sum(max(weight, 0.0) for _, weight in weighted)
    if total <= 0:
        return rng.choice([name for name, _ in weighted])

    threshold = rng.random() * total
    cumulative = 0.0
    for name, weight in weighted:
        cumulative += max(weight, 0.0)
        if threshold < cumulative:
            return name

    # 浮動小数点の誤差対策
    return weighted[-1][0]


def hash_select_variant(
    experiment_name: str,
    participant_id: str,
    variants: Sequence[Variant],
    buckets: int = 10000,
) -> str:
    """設定重みに従って決定論的にバリアントを選択

    (experiment_name, participant_id) のハッシュ値を [0, 1) に正規化し、
    重みの累積比率と比較する。同じ参加者は常に同じバリアントになる。
    """
    digest = hashlib.sha256(f"{experiment_name}:{participant_id}".encode("utf-8")).hexdigest()
    normalized_value = (int(digest, 16) % buckets) / float(buckets)

    total = sum(v.weight for v in variants)
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight / total
        if normalized_value < cumulative:
            return variant.name

    return variants[-1].name


# ===== エンジン =====


class VariantAssignmentEngine:
    """バリアント割り当てエンジン

    使用例:
        store = InMemoryAggregateStore()
        engine = VariantAssignmentEngine(store, ABTestingConfig())
        decision = engine.assign(experiment, "user_001", {"platform": "web"})
        decision.variant  # => "B"

    Attributes:
        store: 集計ストア
        config: A/Bテスト設定
    """

    def __init__(
        self,
        store: AggregateStore,
        config: Optional[ABTestingConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        """VariantAssignmentEngineを初期化

        Args:
            store: 割り当て・カウンタを保持するストア
            config: 設定。Noneの場合はデフォルト設定を使用。
            rng: 乱数生成器（random() / choice() を持つもの）。テストで固定値を注入する。
        """
        self.store = store
        self.config = config or ABTestingConfig()
        self._rng = rng or random.Random()

    def assign(
        self,
        experiment: Experiment,
        participant_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> AssignmentDecision:
        """参加者にバリアントを割り当てる

        Args:
            experiment: 対象の実験
            participant_id: 参加者ID
            context: リクエストのコンテキスト（割り当てと一緒に記録）

        Returns:
            AssignmentDecision

        Raises:
            StorageError: 割り当ての記録に失敗した場合（リトライ可能）
        """
        context = context or {}

        if not accepts_assignments(experiment.status):
            return AssignmentDecision(experiment.control, AssignmentSource.INACTIVE)

        if self._is_excluded(context):
            return AssignmentDecision(experiment.control, AssignmentSource.EXCLUDED)

        existing = self.store.get_assignment(experiment.name, participant_id)
        if existing is not None:
            return AssignmentDecision(
                existing.variant_name, AssignmentSource.EXISTING, existing
            )

        if not in_traffic(
            participant_id,
            experiment.traffic_percentage,
            self.config.traffic_salt,
            self.config.traffic_hash_buckets,
        ):
            if not self.config.record_excluded_participants:
                return AssignmentDecision(experiment.control, AssignmentSource.TRAFFIC_GATE)
            variant, source = experiment.control, AssignmentSource.TRAFFIC_GATE
        else:
            variant, source = self._select(experiment, participant_id)

        assignment = self.store.record_assignment(
            experiment.name, variant, participant_id, context
        )
        if not assignment.is_new:
            # 同時リクエストが先に記録した割り当てを採用
            return AssignmentDecision(
                assignment.variant_name, AssignmentSource.EXISTING, assignment
            )

        logger.debug(
            "Assigned variant: experiment=%s participant=%s variant=%s source=%s",
            experiment.name, participant_id, variant, source.value,
        )
        return AssignmentDecision(variant, source, assignment)

    def select_bandit_variant(
        self,
        experiment: Experiment,
        counts: Dict[str, VariantCounts],
    ) -> Optional[str]:
        """Thompson風スコアが最大のバリアントを選択（候補がなければNone）"""
        best_name: Optional[str] = None
        best_score = -math.inf
        for variant in experiment.variants:
            variant_counts = counts.get(variant.name, VariantCounts())
            score = thompson_score(
                variant_counts.conversion_rate(),
                uncertainty(variant_counts.assignments, self.config.bandit_min_samples),
                self._rng,
                self.config.bandit_prior_scale,
            )
            if score > best_score:
                best_name, best_score = variant.name, score
        return best_name

    def select_adaptive_variant(
        self,
        experiment: Experiment,
        counts: Dict[str, VariantCounts],
    ) -> str:
        """成績で補正した重みで重み付き抽選"""
        return weighted_choice(self.effective_weights(experiment, counts), self._rng)

    def effective_weights(
        self,
        experiment: Experiment,
        counts: Dict[str, VariantCounts],
    ) -> List[Tuple[str, float]]:
        """設定重み × 性能倍率"""
        experiment_average = average_rate(counts)
        return [
            (
                variant.name,
                variant.weight * performance_multiplier(
                    counts.get(variant.name, VariantCounts()),
                    experiment_average,
                    self.config.performance_multiplier_floor,
                ),
            )
            for variant in experiment.variants
        ]

    # ===== Private Methods =====

    def _is_excluded(self, context: Dict[str, Any]) -> bool:
        return any(context.get(flag) for flag in self.config.excluded_context_flags)

    def _select(
        self,
        experiment: Experiment,
        participant_id: str,
    ) -> Tuple[str, AssignmentSource]:
        """バンディット → 適応配分 → ハッシュの順で選択"""
        if self.config.bandit_enabled or self.config.adaptive_allocation_enabled:
            try:
                counts = self.store.read_counts(experiment.name, experiment.variant_names)
            except Exception:
                logger.warning(
                    "Failed to read counts for experiment=%s, using hash fallback",
                    experiment.name,
                    exc_info=True,
                )
                counts = None

            if counts is not None and self.config.bandit_enabled:
                try:
                    variant = self.select_bandit_variant(experiment, counts)
                    if variant is not None:
                        return variant, AssignmentSource.BANDIT
                except Exception:
                    logger.warning(
                        "Bandit selection failed for experiment=%s",
                        experiment.name,
                        exc_info=True,
                    )

            if counts is not None and self.config.adaptive_allocation_enabled:
                try:
                    return (
                        self.select_adaptive_variant(experiment, counts),
                        AssignmentSource.ADAPTIVE,
                    )
                except Exception:
                    logger.warning(
                        "Adaptive allocation failed for experiment=%s",
                        experiment.name,
                        exc_info=True,
                    )

        variant = hash_select_variant(
            experiment.name,
            participant_id,
            experiment.variants,
            self.config.traffic_hash_buckets,
        )
        return variant, AssignmentSource.HASH
