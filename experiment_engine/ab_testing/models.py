# A/Bテスト データモデル
"""
実験・バリアント・割り当て・コンバージョンと、派生集計（カウンタ）のデータ構造

Experiment はカタログが所有する設定で、エンジンからはステータス以外読み取り専用。
Assignment / Conversion は追記のみのイベント。VariantCounts はイベントから派生する読み取りモデル。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from experiment_engine.ab_testing.errors import (
    ExperimentConfigurationError,
    InvalidTrafficPercentageError,
    VariantNotFoundError,
)


def utcnow() -> datetime:
    """タイムゾーン付きの現在時刻（UTC）"""
    return datetime.now(timezone.utc)


class ExperimentStatus(str, Enum):
    """実験のステータス"""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: Any) -> "ExperimentStatus":
        """文字列またはExperimentStatusを変換

        Raises:
            ExperimentConfigurationError: 未知のステータスの場合
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ExperimentConfigurationError(
                f"Unknown experiment status '{value}'. "
                f"Valid statuses: {[s.value for s in cls]}"
            ) from None


@dataclass(frozen=True)
class Variant:
    """実験の1つの処置群"""
    name: str
    weight: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not self.name:
            raise ExperimentConfigurationError("Variant name is required")
        if self.weight <= 0:
            raise ExperimentConfigurationError(
                f"Variant weight must be positive, got {self.weight} for '{self.name}'"
            )


@dataclass
class Experiment:
    """実験定義

    先頭のバリアントを control とする。

    Attributes:
        name: 実験名（一意）
        variants: バリアントのタプル（順序あり）
        traffic_percentage: 実験対象にする母集団の割合（0-100）
        goals: ゴール名のタプル
        status: ライフサイクルステータス
        version: 更新ごとに増加するバージョン
    """
    name: str
    variants: Tuple[Variant, ...]
    traffic_percentage: float = 100.0
    goals: Tuple[str, ...] = ()
    status: ExperimentStatus = ExperimentStatus.DRAFT
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    version: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise ExperimentConfigurationError("Experiment name is required")

        self.variants = tuple(
            v if isinstance(v, Variant) else Variant(str(v)) for v in self.variants
        )
        if not self.variants:
            raise ExperimentConfigurationError("Experiment must have at least 1 variant")

        names = [v.name for v in self.variants]
        if len(names) != len(set(names)):
            raise ExperimentConfigurationError("Variant names must be unique")

        if isinstance(self.traffic_percentage, bool) or not isinstance(
            self.traffic_percentage, (int, float)
        ):
            raise InvalidTrafficPercentageError(self.traffic_percentage)
        if not (0 <= self.traffic_percentage <= 100):
            raise InvalidTrafficPercentageError(self.traffic_percentage)

        # 重複は先頭を残して除去
        self.goals = tuple(dict.fromkeys(self.goals))
        self.status = ExperimentStatus.parse(self.status)

    @property
    def control(self) -> str:
        """control バリアント名"""
        return self.variants[0].name

    @property
    def variant_names(self) -> List[str]:
        return [v.name for v in self.variants]

    @property
    def is_running(self) -> bool:
        return self.status == ExperimentStatus.RUNNING

    def get_variant(self, variant_name: str) -> Variant:
        """バリアントを名前で取得

        Raises:
            VariantNotFoundError: バリアントが存在しない場合
        """
        for variant in self.variants:
            if variant.name == variant_name:
                return variant
        raise VariantNotFoundError(self.name, variant_name)

    def has_goal(self, goal: str) -> bool:
        return goal in self.goals

    def with_status(
        self,
        new_status: ExperimentStatus,
        now: Optional[datetime] = None,
    ) -> "Experiment":
        """ステータスを変更したコピーを返す

        初めて running になった時点で started_at、completed で ended_at を設定する。
        """
        now = now or utcnow()
        started_at = self.started_at
        ended_at = self.ended_at
        if new_status == ExperimentStatus.RUNNING and started_at is None:
            started_at = now
        if new_status == ExperimentStatus.COMPLETED:
            ended_at = now
        return replace(
            self,
            status=new_status,
            started_at=started_at,
            ended_at=ended_at,
            version=self.version + 1,
        )

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（CLI出力・JSONシリアライズ用）"""
        return {
            "name": self.name,
            "description": self.description,
            "variants": [
                {"name": v.name, "weight": v.weight, "metadata": dict(v.metadata)}
                for v in self.variants
            ],
            "traffic_percentage": self.traffic_percentage,
            "goals": list(self.goals),
            "status": self.status.value,
            "version": self.version,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass(frozen=True)
class Assignment:
    """割り当てイベント

    is_new は今回の呼び出しで新規に記録されたかどうか（既存の割り当てを返した場合False）。
    """
    experiment_name: str
    participant_id: str
    variant_name: str
    assigned_at: datetime
    context: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    is_new: bool = field(default=True, compare=False)


@dataclass(frozen=True)
class Conversion:
    """コンバージョンイベント

    variant_name は割り当て時点のバリアント。
    """
    experiment_name: str
    participant_id: str
    goal: str
    variant_name: str
    converted_at: datetime


@dataclass
class VariantCounts:
    """バリアントごとの集計（派生データ）"""
    assignments: int = 0
    conversions: Dict[str, int] = field(default_factory=dict)

    @property
    def total_conversions(self) -> int:
        return sum(self.conversions.values())

    def conversion_count(self, goal: Optional[str] = None) -> int:
        """ゴール別（None の場合は全ゴール合計）のコンバージョン数"""
        if goal is None:
            return self.total_conversions
        return self.conversions.get(goal, 0)

    def conversion_rate(self, goal: Optional[str] = None) -> float:
        """コンバージョン率

        conversions / max(assignments, 1) を [0, 1] に丸める。
        イベント再生順の揺らぎで一時的に conversions > assignments になっても例外にしない。
        """
        rate = self.conversion_count(goal) / max(self.assignments, 1)
        return min(max(rate, 0.0), 1.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignments": self.assignments,
            "conversions": dict(self.conversions),
        }


def total_assignments(counts: Dict[str, VariantCounts]) -> int:
    """実験全体の参加者数"""
    return sum(c.assignments for c in counts.values())


def average_rate(counts: Dict[str, VariantCounts], goal: Optional[str] = None) -> float:
    """実験全体の平均コンバージョン率（参加者がいなければ0.0）"""
    assignments = total_assignments(counts)
    if assignments == 0:
        return 0.0
    conversions = sum(c.conversion_count(goal) for c in counts.values())
    return min(conversions / assignments, 1.0)


def fill_counts(
    counts: Dict[str, VariantCounts],
    variant_names: Iterable[str],
) -> Dict[str, VariantCounts]:
    """データのないバリアントを0件として補完"""
    filled = {name: counts.get(name, VariantCounts()) for name in variant_names}
    for name, value in counts.items():
        filled.setdefault(name, value)
    return filled
