# データモデルテスト
"""
models モジュールの単体テスト

検証観点:
- Experiment の入力検証（バリアント数・重複・重み・トラフィック率）
- with_status のタイムスタンプとバージョン
- VariantCounts の率計算（ゼロ除算なし、[0, 1] に丸め）
"""

from datetime import datetime, timedelta, timezone

import pytest

from experiment_engine.ab_testing.errors import (
    ExperimentConfigurationError,
    InvalidTrafficPercentageError,
    VariantNotFoundError,
)
from experiment_engine.ab_testing.models import (
    Experiment,
    ExperimentStatus,
    Variant,
    VariantCounts,
    average_rate,
    fill_counts,
    total_assignments,
)


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# TestExperiment
# ============================================================================


class TestExperiment:
    """Experiment のテスト"""

    def test_control_is_first_variant(self):
        experiment = Experiment(name="checkout-button", variants=(Variant("A"), Variant("B")))
        assert experiment.control == "A"
        assert experiment.variant_names == ["A", "B"]
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.version == 1

    def test_string_variants_are_converted(self):
        experiment = Experiment(name="exp", variants=("A", "B"))
        assert experiment.variants == (Variant("A"), Variant("B"))
        assert experiment.get_variant("B").weight == 1.0

    def test_requires_variant(self):
        with pytest.raises(ExperimentConfigurationError, match="at least 1 variant"):
            Experiment(name="exp", variants=())

    def test_requires_name(self):
        with pytest.raises(ExperimentConfigurationError, match="name is required"):
            Experiment(name="", variants=("A",))

    def test_duplicate_variant_names(self):
        with pytest.raises(ExperimentConfigurationError, match="unique"):
            Experiment(name="exp", variants=("A", "A"))

    @pytest.mark.parametrize("weight", [0, -1.0])
    def test_non_positive_weight(self, weight):
        with pytest.raises(ExperimentConfigurationError, match="weight must be positive"):
            Variant("A", weight=weight)

    @pytest.mark.parametrize("traffic", [-0.1, 100.1, "50", None, True])
    def test_invalid_traffic(self, traffic):
        with pytest.raises(InvalidTrafficPercentageError):
            Experiment(name="exp", variants=("A", "B"), traffic_percentage=traffic)

    @pytest.mark.parametrize("traffic", [0, 0.5, 100])
    def test_traffic_boundaries(self, traffic):
        experiment = Experiment(name="exp", variants=("A", "B"), traffic_percentage=traffic)
        assert experiment.traffic_percentage == traffic

    def test_invalid_traffic_is_configuration_error(self):
        """InvalidTrafficPercentageError は ValueError としても捕捉できる"""
        with pytest.raises(ValueError):
            Experiment(name="exp", variants=("A",), traffic_percentage=150)

    def test_goals_deduplicated(self):
        experiment = Experiment(name="exp", variants=("A",), goals=("buy", "cart", "buy"))
        assert experiment.goals == ("buy", "cart")
        assert experiment.has_goal("cart")
        assert not experiment.has_goal("signup")

    def test_get_variant_not_found(self):
        experiment = Experiment(name="exp", variants=("A",))
        with pytest.raises(VariantNotFoundError):
            experiment.get_variant("Z")

    def test_status_from_string(self):
        experiment = Experiment(name="exp", variants=("A",), status="running")
        assert experiment.status == ExperimentStatus.RUNNING
        assert experiment.is_running


class TestWithStatus:
    """with_status のテスト"""

    def test_first_run_sets_started_at(self):
        experiment = Experiment(name="exp", variants=("A",))
        running = experiment.with_status(ExperimentStatus.RUNNING, NOW)

        assert running.status == ExperimentStatus.RUNNING
        assert running.started_at == NOW
        assert running.ended_at is None
        assert running.version == 2
        # 元のインスタンスは変更しない
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.version == 1

    def test_resume_keeps_started_at(self):
        experiment = Experiment(name="exp", variants=("A",))
        running = experiment.with_status(ExperimentStatus.RUNNING, NOW)
        paused = running.with_status(ExperimentStatus.PAUSED, NOW + timedelta(days=1))
        resumed = paused.with_status(ExperimentStatus.RUNNING, NOW + timedelta(days=2))

        assert resumed.started_at == NOW
        assert resumed.version == 4

    def test_completed_sets_ended_at(self):
        experiment = Experiment(name="exp", variants=("A",), status="running", started_at=NOW)
        completed = experiment.with_status(ExperimentStatus.COMPLETED, NOW + timedelta(days=3))
        assert completed.ended_at == NOW + timedelta(days=3)

    def test_to_dict(self):
        experiment = Experiment(
            name="exp",
            variants=(Variant("A"), Variant("B", weight=2.0, metadata={"color": "red"})),
            goals=("buy",),
            created_at=NOW,
        )
        data = experiment.to_dict()
        assert data["name"] == "exp"
        assert data["status"] == "draft"
        assert data["variants"][1] == {"name": "B", "weight": 2.0, "metadata": {"color": "red"}}
        assert data["goals"] == ["buy"]
        assert data["created_at"] == NOW.isoformat()
        assert data["started_at"] is None


# ============================================================================
# TestVariantCounts
# ============================================================================


class TestVariantCounts:
    """VariantCounts と集計ヘルパーのテスト"""

    def test_rate_without_assignments(self):
        """割り当て0でもゼロ除算しない"""
        assert VariantCounts().conversion_rate() == 0.0

    def test_rate_per_goal_and_total(self):
        counts = VariantCounts(assignments=10, conversions={"buy": 2, "cart": 3})
        assert counts.total_conversions == 5
        assert counts.conversion_rate() == pytest.approx(0.5)
        assert counts.conversion_rate("buy") == pytest.approx(0.2)
        assert counts.conversion_rate("signup") == 0.0

    def test_rate_is_clamped(self):
        """conversions > assignments でも 1.0 を超えない"""
        counts = VariantCounts(assignments=2, conversions={"buy": 5})
        assert counts.conversion_rate() == 1.0

    def test_helpers(self):
        counts = {
            "A": VariantCounts(assignments=10, conversions={"buy": 1}),
            "B": VariantCounts(assignments=30, conversions={"buy": 3, "cart": 4}),
        }
        assert total_assignments(counts) == 40
        assert average_rate(counts) == pytest.approx(8 / 40)
        assert average_rate(counts, "buy") == pytest.approx(4 / 40)
        assert average_rate({}) == 0.0

    def test_fill_counts(self):
        filled = fill_counts({"B": VariantCounts(assignments=1)}, ["A", "B"])
        assert list(filled) == ["A", "B"]
        assert filled["A"].assignments == 0
        assert filled["B"].assignments == 1
