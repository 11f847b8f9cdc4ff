# 統計関数
"""
コンバージョン率比較のための純粋関数

- z_score: プールした比率による2群比較のz値と信頼度区分
- wilson_score_interval: 二項比率のWilsonスコア区間
- two_sided_p_value: z値に対する両側p値（scipy.stats.norm）

いずれも境界値（サンプル不足、標準誤差0、n=0）では例外ではなく定義済みの値を返す。
"""

import math
from dataclasses import dataclass
from typing import Tuple

from scipy import stats


INSUFFICIENT_DATA = "Insufficient Data"
INVALID_DATA = "Invalid Data"
CONFIDENCE_LOW = "Low (<80%)"
CONFIDENCE_MEDIUM = "Medium (80-90%)"
CONFIDENCE_HIGH = "High (90-98%)"
CONFIDENCE_VERY_HIGH = "Very High (>98%)"

DEFAULT_MIN_SAMPLE_SIZE = 30
DEFAULT_THRESHOLDS: Tuple[float, float, float] = (1.28, 1.64, 2.33)
SIGNIFICANCE_Z = 1.96
WILSON_Z = 1.96


@dataclass(frozen=True)
class ZScoreResult:
    """z検定の結果"""
    z_score: float
    confidence: str

    @property
    def is_significant(self) -> bool:
        return is_significant(self.z_score)


@dataclass(frozen=True)
class ConfidenceInterval:
    """信頼区間"""
    lower: float
    upper: float

    def to_dict(self) -> dict:
        return {"lower": self.lower, "upper": self.upper}


def _clamp_rate(rate: float) -> float:
    return min(max(float(rate), 0.0), 1.0)


def confidence_bucket(
    z: float,
    thresholds: Tuple[float, float, float] = DEFAULT_THRESHOLDS,
) -> str:
    """z値を信頼度区分に変換"""
    low, medium, high = thresholds
    if z < low:
        return CONFIDENCE_LOW
    if z < medium:
        return CONFIDENCE_MEDIUM
    if z < high:
        return CONFIDENCE_HIGH
    return CONFIDENCE_VERY_HIGH


def z_score(
    rate_a: float,
    rate_b: float,
    n: int,
    min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
    thresholds: Tuple[float, float, float] = DEFAULT_THRESHOLDS,
) -> ZScoreResult:
    """2つのコンバージョン率のz値を計算

    pooled = (rate_a + rate_b) / 2
    se = sqrt(2 * pooled * (1 - pooled) / n)
    z = |rate_a - rate_b| / se

    Args:
        rate_a: 群Aのコンバージョン率
        rate_b: 群Bのコンバージョン率
        n: 参加者数
        min_sample_size: これ未満は "Insufficient Data"

    Returns:
        ZScoreResult（z値は小数第3位で丸め）
    """
    if n < min_sample_size:
        return ZScoreResult(z_score=0.0, confidence=INSUFFICIENT_DATA)

    rate_a = _clamp_rate(rate_a)
    rate_b = _clamp_rate(rate_b)

    pooled = (rate_a + rate_b) / 2
    standard_error = math.sqrt(2 * pooled * (1 - pooled) / n)

    if standard_error == 0:
        return ZScoreResult(z_score=0.0, confidence=INVALID_DATA)

    z = abs(rate_a - rate_b) / standard_error
    return ZScoreResult(
        z_score=round(z, 3),
        confidence=confidence_bucket(z, thresholds),
    )


def is_significant(z: float, threshold: float = SIGNIFICANCE_Z) -> bool:
    """両側95%で有意か（z > 1.96）"""
    return z > threshold


def two_sided_p_value(z: float) -> float:
    """z値に対する両側p値"""
    return float(2 * stats.norm.sf(abs(z)))


def wilson_score_interval(rate: float, n: int, z: float = WILSON_Z) -> ConfidenceInterval:
    """Wilsonスコア区間

    n == 0 の場合は最大の不確実性として (0.0, 1.0) を返す。

    Args:
        rate: 観測されたコンバージョン率
        n: 試行数
        z: 信頼水準に対応するz値（デフォルト95%）
    """
    if n <= 0:
        return ConfidenceInterval(lower=0.0, upper=1.0)

    p = _clamp_rate(rate)
    n = float(n)

    denominator = 1 + z ** 2 / n
    adjustment = (z / (2 * n)) * math.sqrt(4 * n * p * (1 - p) + z ** 2)
    center = (p + z ** 2 / (2 * n)) / denominator
    spread = adjustment / denominator

    return ConfidenceInterval(
        lower=max(center - spread, 0.0),
        upper=min(center + spread, 1.0),
    )
