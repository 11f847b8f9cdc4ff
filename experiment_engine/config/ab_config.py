# A/Bテストエンジン パラメータ設定
# バリアント割り当て・統計分析・リスク評価で使用する閾値をまとめて管理する

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _env_flag(name: str) -> Optional[bool]:
    """真偽値の環境変数を読み取る（未設定ならNone）"""
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ABTestingConfig:
    """A/Bテストエンジン設定

    割り当てアルゴリズム（バンディット → 適応配分 → ハッシュ）、
    統計検定、リスク評価のパラメータを保持する。

    環境変数:
        AB_TRAFFIC_SALT: トラフィックゲート用ハッシュのソルト
        AB_BANDIT_ENABLED: バンディット選択を有効にするか
        AB_ADAPTIVE_ALLOCATION_ENABLED: 適応配分を有効にするか
        AB_ALLOW_PAUSED_CONVERSIONS: 一時停止中のコンバージョンを受け付けるか
        AB_RECORD_EXCLUDED_PARTICIPANTS: トラフィック対象外の参加者を control として記録するか

    使用例:
        config = ABTestingConfig()  # 環境変数から自動取得
        config = ABTestingConfig(bandit_enabled=False)
    """

    # === 割り当て ===
    bandit_enabled: bool = True
    """バンディット選択（Thompson風スコア）を使用するか"""

    adaptive_allocation_enabled: bool = True
    """バンディットが結果を返さない場合に適応配分を使用するか"""

    bandit_min_samples: int = 10
    """これ未満の割り当て数では不確実性を1.0とする"""

    bandit_prior_scale: float = 100.0
    """擬似ベータスコアの alpha/beta スケール"""

    performance_multiplier_floor: float = 0.5
    """性能倍率 = floor + (1 - floor) * (バリアント率 / 平均率)"""

    traffic_hash_buckets: int = 10000
    """トラフィックゲートのバケット数（traffic_percentage * 100 と比較）"""

    traffic_salt: str = "_experiment"
    """トラフィックゲート用ハッシュのソルト"""

    record_excluded_participants: bool = True
    """トラフィックゲート外の参加者を control として記録するか（False はコンバージョンを受け付けない）"""

    excluded_context_flags: Tuple[str, ...] = ("admin", "beta_tester")
    """コンテキストでTrueの場合に実験から除外するフラグ"""

    # === コンバージョン ===
    allow_paused_conversions: bool = False
    """一時停止中の実験で既存参加者のコンバージョンを受け付けるか"""

    default_goals: Tuple[str, ...] = (
        "completed_purchase",
        "added_to_cart",
        "signup_completed",
        "newsletter_subscription",
    )
    """ゴール未指定で実験を登録した場合のゴール"""

    # === 統計 ===
    min_sample_size: int = 30
    """z検定に必要な最小参加者数（正規近似の前提）"""

    significance_z: float = 1.96
    """有意判定の閾値（両側95%）"""

    wilson_z: float = 1.96
    """Wilsonスコア区間のz値"""

    confidence_thresholds: Tuple[float, float, float] = (1.28, 1.64, 2.33)
    """信頼度区分の境界（Low / Medium / High / Very High）"""

    # === リスク評価 ===
    risk_min_participants: int = 100
    """これ未満の参加者数はサンプル不足リスク"""

    risk_prolonged_days: int = 30
    """この日数を超えて参加者が少ない場合は長期化リスク"""

    risk_prolonged_participants: int = 500
    """長期化リスク判定の参加者数"""

    risk_significance_days: int = 7
    """この日数を超えて有意差がない場合はリスク"""

    # === 運用アクション ===
    action_underperformance_ratio: float = 0.8
    """control の率にこの比率を掛けた値を下回るバリアントは配分削減を提案"""

    action_recent_hours: int = 24
    """割り当てパターンを評価する直近の時間幅"""

    action_unbalanced_ratio: float = 3.0
    """直近の割り当て数の最大がこの倍率で最小を上回ると偏りとみなす"""

    # === イベント配信 ===
    event_workers: int = 2
    """イベント配信スレッド数"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を取得"""
        env_salt = os.getenv("AB_TRAFFIC_SALT")
        if env_salt:
            self.traffic_salt = env_salt

        for env_name, attr in (
            ("AB_BANDIT_ENABLED", "bandit_enabled"),
            ("AB_ADAPTIVE_ALLOCATION_ENABLED", "adaptive_allocation_enabled"),
            ("AB_ALLOW_PAUSED_CONVERSIONS", "allow_paused_conversions"),
            ("AB_RECORD_EXCLUDED_PARTICIPANTS", "record_excluded_participants"),
        ):
            flag = _env_flag(env_name)
            if flag is not None:
                setattr(self, attr, flag)

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 値が無効な場合
        """
        if self.bandit_min_samples < 0:
            raise ValueError(
                f"bandit_min_samples must be non-negative: {self.bandit_min_samples}"
            )

        if self.bandit_prior_scale <= 0:
            raise ValueError(
                f"bandit_prior_scale must be positive: {self.bandit_prior_scale}"
            )

        if not (0.0 <= self.performance_multiplier_floor <= 1.0):
            raise ValueError(
                "performance_multiplier_floor must be within 0.0-1.0: "
                f"{self.performance_multiplier_floor}"
            )

        if self.traffic_hash_buckets <= 0:
            raise ValueError(
                f"traffic_hash_buckets must be positive: {self.traffic_hash_buckets}"
            )

        if self.min_sample_size < 1:
            raise ValueError(f"min_sample_size must be >= 1: {self.min_sample_size}")

        low, medium, high = self.confidence_thresholds
        if not (0 < low < medium < high):
            raise ValueError(
                f"confidence_thresholds must be increasing: {self.confidence_thresholds}"
            )

        if not (0.0 < self.action_underperformance_ratio <= 1.0):
            raise ValueError(
                "action_underperformance_ratio must be within (0.0, 1.0]: "
                f"{self.action_underperformance_ratio}"
            )

        if self.action_recent_hours < 1 or self.action_unbalanced_ratio < 1.0:
            raise ValueError(
                f"Invalid participation window: hours={self.action_recent_hours}, "
                f"ratio={self.action_unbalanced_ratio}"
            )

        if self.event_workers < 1:
            raise ValueError(f"event_workers must be >= 1: {self.event_workers}")


# デフォルト設定のインスタンス
ab_config = ABTestingConfig()
