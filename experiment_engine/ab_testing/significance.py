# 有意性分析
"""
集計ストアのカウンタから、control と各バリアントの比較レポートを作成する

各バリアントについて:
- コンバージョン率と Wilson スコア区間
- control に対する z値・信頼度区分・有意判定（z > 1.96）・両側p値・リフト

z値の n には実験全体の参加者数を用いる。
読み取り専用の計算で、レポート自体は保存しない（常にカウンタから再計算する）。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from experiment_engine.ab_testing.aggregate_store import AggregateStore
from experiment_engine.ab_testing.models import (
    Assignment,
    Experiment,
    VariantCounts,
    fill_counts,
    total_assignments,
    utcnow,
)
from experiment_engine.ab_testing.statistics import (
    ConfidenceInterval,
    INSUFFICIENT_DATA,
    INVALID_DATA,
    ZScoreResult,
    is_significant,
    two_sided_p_value,
    wilson_score_interval,
    z_score,
)
from experiment_engine.config.ab_config import ABTestingConfig


logger = logging.getLogger(__name__)


@dataclass
class VariantSignificance:
    """バリアント1つ分の分析結果

    control の行では z_score / confidence / p_value / lift は None。
    """
    variant: str
    is_control: bool
    participants: int
    conversions: int
    conversion_rate: float
    interval: ConfidenceInterval
    z_score: Optional[float] = None
    confidence: Optional[str] = None
    is_significant: bool = False
    p_value: Optional[float] = None
    lift: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "is_control": self.is_control,
            "participants": self.participants,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "interval": self.interval.to_dict(),
            "z_score": self.z_score,
            "confidence": self.confidence,
            "is_significant": self.is_significant,
            "p_value": self.p_value,
            "lift": self.lift,
        }


@dataclass
class SignificanceReport:
    """実験の有意性レポート"""
    experiment_name: str
    control: str
    goal: Optional[str]
    total_participants: int
    variants: Dict[str, VariantSignificance] = field(default_factory=dict)
    winner: Optional[str] = None
    recommendation: str = ""

    @property
    def comparisons(self) -> Dict[str, VariantSignificance]:
        """control 以外のバリアント"""
        return {name: v for name, v in self.variants.items() if not v.is_control}

    @property
    def any_significant(self) -> bool:
        return any(v.is_significant for v in self.comparisons.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_name": self.experiment_name,
            "control": self.control,
            "goal": self.goal,
            "total_participants": self.total_participants,
            "variants": {name: v.to_dict() for name, v in self.variants.items()},
            "winner": self.winner,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class ExperimentRisk:
    """実験運用上のリスク"""
    type: str
    severity: str
    message: str
    mitigation: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "mitigation": self.mitigation,
        }


@dataclass(frozen=True)
class ExperimentAction:
    """提案する運用アクション

    details は対象バリアント名、または検出した異常の種類。
    """
    type: str
    action: str
    details: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "action": self.action,
            "details": list(self.details),
        }


class SignificanceEngine:
    """有意性分析エンジン

    使用例:
        engine = SignificanceEngine(store, config)
        report = engine.report(experiment)
        report.variants["B"].is_significant
    """

    def __init__(
        self,
        store: AggregateStore,
        config: Optional[ABTestingConfig] = None,
    ):
        self.store = store
        self.config = config or ABTestingConfig()

    def report(
        self,
        experiment: Experiment,
        goal: Optional[str] = None,
    ) -> SignificanceReport:
        """ストアのカウンタから有意性レポートを作成

        Args:
            experiment: 対象の実験
            goal: 分析するゴール。Noneの場合は全ゴール合計
        """
        counts = self.store.read_counts(experiment.name, experiment.variant_names)
        report = self.analyze(experiment, counts, goal)
        logger.debug(
            "Significance report: experiment=%s participants=%d winner=%s",
            experiment.name, report.total_participants, report.winner,
        )
        return report

    def analyze(
        self,
        experiment: Experiment,
        counts: Dict[str, VariantCounts],
        goal: Optional[str] = None,
    ) -> SignificanceReport:
        """カウンタのスナップショットから有意性レポートを作成（純粋関数）"""
        counts = fill_counts(counts, experiment.variant_names)
        control_name = experiment.control
        control_counts = counts[control_name]
        control_rate = control_counts.conversion_rate(goal)
        n = total_assignments(counts)

        report = SignificanceReport(
            experiment_name=experiment.name,
            control=control_name,
            goal=goal,
            total_participants=n,
        )

        report.variants[control_name] = VariantSignificance(
            variant=control_name,
            is_control=True,
            participants=control_counts.assignments,
            conversions=control_counts.conversion_count(goal),
            conversion_rate=control_rate,
            interval=wilson_score_interval(
                control_rate, control_counts.assignments, self.config.wilson_z
            ),
        )

        for variant_name in experiment.variant_names:
            if variant_name == control_name:
                continue
            variant_counts = counts[variant_name]
            rate = variant_counts.conversion_rate(goal)
            if control_counts.assignments == 0:
                # 比較対象のない control に対しては判定しない
                result = ZScoreResult(z_score=0.0, confidence=INSUFFICIENT_DATA)
            else:
                result = z_score(
                    rate,
                    control_rate,
                    n,
                    min_sample_size=self.config.min_sample_size,
                    thresholds=self.config.confidence_thresholds,
                )
            has_z = result.confidence not in (INSUFFICIENT_DATA, INVALID_DATA)

            report.variants[variant_name] = VariantSignificance(
                variant=variant_name,
                is_control=False,
                participants=variant_counts.assignments,
                conversions=variant_counts.conversion_count(goal),
                conversion_rate=rate,
                interval=wilson_score_interval(
                    rate, variant_counts.assignments, self.config.wilson_z
                ),
                z_score=result.z_score,
                confidence=result.confidence,
                is_significant=is_significant(result.z_score, self.config.significance_z),
                p_value=two_sided_p_value(result.z_score) if has_z else None,
                lift=(rate - control_rate) / control_rate if control_rate > 0 else None,
            )

        report.winner = self._pick_winner(report)
        report.recommendation = self._generate_recommendation(report)
        return report

    def assess_risks(
        self,
        experiment: Experiment,
        report: SignificanceReport,
        now: Optional[datetime] = None,
    ) -> List[ExperimentRisk]:
        """実験のリスクを評価

        - 参加者数不足（high）
        - 参加者が少ないまま長期化（medium）
        - 一定期間経過しても有意差なし（medium）
        """
        now = now or utcnow()
        risks: List[ExperimentRisk] = []
        participants = report.total_participants

        if participants < self.config.risk_min_participants:
            risks.append(ExperimentRisk(
                type="insufficient_sample_size",
                severity="high",
                message="Low participant count may lead to unreliable results",
                mitigation="increase_traffic_or_extend_duration",
            ))

        started = experiment.started_at or experiment.created_at
        days_running = (now - started).total_seconds() / 86400 if started else 0.0

        if (
            days_running > self.config.risk_prolonged_days
            and participants < self.config.risk_prolonged_participants
        ):
            risks.append(ExperimentRisk(
                type="prolonged_duration",
                severity="medium",
                message="Experiment running too long with insufficient participants",
                mitigation="increase_traffic_or_consider_early_termination",
            ))

        if days_running > self.config.risk_significance_days and not report.any_significant:
            risks.append(ExperimentRisk(
                type="no_significant_results",
                severity="medium",
                message="No variants showing statistical significance",
                mitigation="extend_duration_or_increase_sample_size",
            ))

        return risks

    def experiment_actions(
        self,
        experiment: Experiment,
        report: SignificanceReport,
        assignments: Sequence[Assignment],
        now: Optional[datetime] = None,
    ) -> List[ExperimentAction]:
        """データに基づく運用アクションを提案

        - control の率の一定割合を下回るバリアント → 配分削減・除外
        - 直近の割り当てがない、または直近の配分が偏っている → 流入元の調査

        割り当ての偏りは実行中の実験のみ評価する。

        Args:
            experiment: 対象の実験
            report: analyze / report の結果
            assignments: 実験の割り当てログ
            now: 現在時刻
        """
        now = now or utcnow()
        actions: List[ExperimentAction] = []

        control_rate = report.variants[report.control].conversion_rate
        threshold = control_rate * self.config.action_underperformance_ratio
        underperforming = tuple(
            v.variant
            for v in report.comparisons.values()
            if v.participants > 0 and v.conversion_rate < threshold
        )
        if underperforming:
            actions.append(ExperimentAction(
                type="variant_optimization",
                action="reduce_allocation_or_remove",
                details=underperforming,
            ))

        if experiment.is_running:
            anomalies = self._participation_anomalies(assignments, now)
            if anomalies:
                actions.append(ExperimentAction(
                    type="participation_investigation",
                    action="investigate_traffic_sources",
                    details=anomalies,
                ))

        return actions

    # ===== Private Methods =====

    def _participation_anomalies(
        self,
        assignments: Sequence[Assignment],
        now: datetime,
    ) -> Tuple[str, ...]:
        """直近ウィンドウ内の割り当てパターンの異常"""
        since = now - timedelta(hours=self.config.action_recent_hours)
        recent: Dict[str, int] = {}
        for assignment in assignments:
            if assignment.assigned_at >= since:
                recent[assignment.variant_name] = recent.get(assignment.variant_name, 0) + 1

        anomalies: List[str] = []
        if not recent:
            anomalies.append("no_recent_assignments")
        elif len(recent) > 1:
            if max(recent.values()) > min(recent.values()) * self.config.action_unbalanced_ratio:
                anomalies.append("unbalanced_distribution")
        return tuple(anomalies)

    def _pick_winner(self, report: SignificanceReport) -> Optional[str]:
        """有意なバリアントのうち control を上回る最良のもの

        有意なバリアントがすべて control を下回る場合は control。
        """
        significant = [v for v in report.comparisons.values() if v.is_significant]
        if not significant:
            return None

        control_rate = report.variants[report.control].conversion_rate
        better = [v for v in significant if v.conversion_rate > control_rate]
        if better:
            return max(better, key=lambda v: v.conversion_rate).variant
        return report.control

    def _generate_recommendation(self, report: SignificanceReport) -> str:
        """推奨事項を生成"""
        if report.total_participants == 0:
            return "No data collected yet. Continue running the experiment."

        if report.variants[report.control].participants == 0:
            return (
                f"Control '{report.control}' has no participants yet. "
                "Continue running the experiment."
            )

        if report.total_participants < self.config.min_sample_size:
            needed = self.config.min_sample_size - report.total_participants
            return (
                f"Insufficient samples ({report.total_participants} participants). "
                f"Need at least {needed} more participants."
            )

        if report.winner and report.winner != report.control:
            winner = report.variants[report.winner]
            return (
                f"Statistically significant result. "
                f"Recommended: Adopt '{winner.variant}' "
                f"(rate={winner.conversion_rate:.4f}, n={winner.participants})"
            )

        if report.winner == report.control:
            return (
                f"Variants perform significantly worse than control. "
                f"Recommended: Keep '{report.control}'."
            )

        return (
            "No statistically significant difference detected. "
            "Consider extending the experiment duration or accepting the control."
        )
