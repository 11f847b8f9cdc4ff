# VariantAssignmentEngine テスト
"""
バリアント割り当てエンジンの単体テスト

検証観点:
- 判定順: 非実行中 → 除外 → 既存 → トラフィックゲート → バンディット → 適応配分 → ハッシュ
- 冪等性: 同一参加者への繰り返し割り当ては同じバリアント
- トラフィックゲートの決定性（同じIDは常に同じ判定）
- フォールバック: 選択アルゴリズムの失敗はハッシュ選択に落ちる、記録の失敗は送出する
"""

import hashlib
import itertools
from concurrent.futures import ThreadPoolExecutor

import pytest

from experiment_engine.ab_testing.aggregate_store import InMemoryAggregateStore
from experiment_engine.ab_testing.assignment import (
    AssignmentSource,
    VariantAssignmentEngine,
    hash_select_variant,
    in_traffic,
    performance_multiplier,
    thompson_score,
    traffic_bucket,
    uncertainty,
    weighted_choice,
)
from experiment_engine.ab_testing.errors import StorageError
from experiment_engine.ab_testing.models import Experiment, Variant, VariantCounts
from experiment_engine.config.ab_config import ABTestingConfig


class FakeRandom:
    """random() が指定した値を順に返す乱数生成器"""

    def __init__(self, *values):
        self._values = itertools.cycle(values or (0.5,))
        self.calls = 0

    def random(self):
        self.calls += 1
        return next(self._values)

    def choice(self, seq):
        return seq[0]


class FailingRandom:
    """random() が常に失敗する乱数生成器"""

    def random(self):
        raise RuntimeError("entropy unavailable")

    def choice(self, seq):
        raise RuntimeError("entropy unavailable")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store():
    return InMemoryAggregateStore()


@pytest.fixture
def experiment():
    return Experiment(
        name="checkout-button",
        variants=(Variant("A"), Variant("B")),
        status="running",
    )


def make_config(**overrides):
    config = ABTestingConfig(**overrides)
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


# ============================================================================
# TestTrafficGate
# ============================================================================


class TestTrafficGate:
    """traffic_bucket / in_traffic のテスト"""

    def test_bucket_is_deterministic(self):
        """同じIDは常に同じバケット（プロセスに依存しない SHA-256）"""
        assert traffic_bucket("user_001") == traffic_bucket("user_001")
        assert 0 <= traffic_bucket("user_001") < 10000

    def test_bucket_known_value(self):
        """ハッシュ入力は f"{participant_id}{salt}" """
        expected = int(hashlib.sha256(b"user_001_experiment").hexdigest(), 16) % 10000
        assert traffic_bucket("user_001") == expected

    def test_salt_changes_bucket_distribution(self):
        ids = [f"user_{i}" for i in range(50)]
        default = [traffic_bucket(pid) for pid in ids]
        salted = [traffic_bucket(pid, salt="_other") for pid in ids]
        assert default != salted

    @pytest.mark.parametrize("pid", ["user_001", "user_002", "abc", ""])
    def test_full_and_zero_traffic(self, pid):
        assert in_traffic(pid, 100) is True
        assert in_traffic(pid, 0) is False

    def test_decision_is_stable(self):
        decisions = [in_traffic("user_042", 37.5) for _ in range(10)]
        assert len(set(decisions)) == 1

    def test_proportion(self):
        """30% 指定で約30%が対象になる"""
        included = sum(in_traffic(f"participant-{i}", 30) for i in range(10000))
        assert 0.27 < included / 10000 < 0.33

    def test_threshold_uses_bucket(self):
        pid = "user_001"
        bucket = traffic_bucket(pid)
        assert in_traffic(pid, (bucket + 0.5) / 100.0) is True
        assert in_traffic(pid, (bucket - 0.5) / 100.0) is False


# ============================================================================
# TestScoring
# ============================================================================


class TestScoring:
    """スコア計算・重み付き抽選のテスト"""

    def test_uncertainty(self):
        assert uncertainty(0) == 1.0
        assert uncertainty(9) == 1.0
        assert uncertainty(100) == pytest.approx(0.1)

    def test_thompson_score(self):
        score = thompson_score(0.0, 1.0, FakeRandom(0.5))
        assert score == pytest.approx(1 / 102 + 0.5)

    def test_thompson_score_uses_rate(self):
        high = thompson_score(0.5, 0.0, FakeRandom(0.0))
        low = thompson_score(0.1, 0.0, FakeRandom(0.0))
        assert high == pytest.approx(0.5)
        assert high > low

    def test_performance_multiplier(self):
        counts = VariantCounts(assignments=100, conversions={"buy": 20})
        assert performance_multiplier(counts, 0.1) == pytest.approx(1.5)
        assert performance_multiplier(VariantCounts(), 0.1) == 1.0
        assert performance_multiplier(counts, 0.0) == 1.0

    def test_weighted_choice(self):
        weighted = [("A", 1.0), ("B", 3.0)]
        assert weighted_choice(weighted, FakeRandom(0.0)) == "A"
        assert weighted_choice(weighted, FakeRandom(0.24)) == "A"
        assert weighted_choice(weighted, FakeRandom(0.26)) == "B"
        assert weighted_choice(weighted, FakeRandom(0.999)) == "B"

    def test_weighted_choice_zero_total_is_uniform(self):
        assert weighted_choice([("A", 0.0), ("B", 0.0)], FakeRandom()) == "A"

    def test_weighted_choice_empty(self):
        with pytest.raises(ValueError):
            weighted_choice([], FakeRandom())

    def test_hash_select_respects_weights(self):
        variants = (Variant("A", weight=1.0), Variant("B", weight=3.0))
        picks = [hash_select_variant("exp", f"user_{i}", variants) for i in range(4000)]
        share_b = picks.count("B") / len(picks)
        assert 0.72 < share_b < 0.78

    def test_hash_select_is_deterministic(self):
        variants = (Variant("A"), Variant("B"), Variant("C"))
        assert hash_select_variant("exp", "user_1", variants) == hash_select_variant(
            "exp", "user_1", variants
        )


# ============================================================================
# TestEngineDecisionOrder
# ============================================================================


class TestEngineDecisionOrder:
    """VariantAssignmentEngine.assign の判定順テスト"""

    @pytest.mark.parametrize("status", ["draft", "paused", "completed"])
    def test_inactive_returns_control_without_recording(self, store, status):
        experiment = Experiment(name="exp", variants=("A", "B"), status=status)
        engine = VariantAssignmentEngine(store, ABTestingConfig())

        decision = engine.assign(experiment, "user_001")

        assert decision.variant == "A"
        assert decision.source == AssignmentSource.INACTIVE
        assert decision.recorded is False
        assert store.get_assignment("exp", "user_001") is None

    @pytest.mark.parametrize("flag", ["admin", "beta_tester"])
    def test_excluded_context(self, store, experiment, flag):
        engine = VariantAssignmentEngine(store, ABTestingConfig(), FakeRandom(0.1, 0.9))

        decision = engine.assign(experiment, "user_001", {flag: True})

        assert decision.variant == "A"
        assert decision.source == AssignmentSource.EXCLUDED
        assert store.get_assignment(experiment.name, "user_001") is None

    def test_falsy_flag_is_not_excluded(self, store, experiment):
        engine = VariantAssignmentEngine(store, ABTestingConfig(), FakeRandom(0.1, 0.9))
        decision = engine.assign(experiment, "user_001", {"admin": False})
        assert decision.source == AssignmentSource.BANDIT

    def test_existing_assignment_is_returned(self, store, experiment):
        store.record_assignment(experiment.name, "B", "user_001")
        engine = VariantAssignmentEngine(store, ABTestingConfig(), FakeRandom(0.9, 0.1))

        decision = engine.assign(experiment, "user_001")

        assert decision.variant == "B"
        assert decision.source == AssignmentSource.EXISTING
        assert decision.assignment.is_new is False

    def test_idempotent(self, store, experiment):
        """繰り返し割り当てても同じバリアント、カウンタは1"""
        engine = VariantAssignmentEngine(store, ABTestingConfig())
        variants = {engine.assign(experiment, "user_001").variant for _ in range(20)}

        assert len(variants) == 1
        counts = store.read_counts(experiment.name)
        assert sum(c.assignments for c in counts.values()) == 1

    def test_concurrent_idempotent(self, store, experiment):
        engine = VariantAssignmentEngine(store, ABTestingConfig())
        with ThreadPoolExecutor(max_workers=16) as executor:
            decisions = list(executor.map(
                lambda _: engine.assign(experiment, "user_001"), range(100)
            ))

        assert len({d.variant for d in decisions}) == 1
        assert sum(1 for d in decisions if d.assignment.is_new) == 1

    def test_traffic_gate_recorded_as_control(self, store):
        """トラフィック対象外でも control として記録され、コンバージョンを受け付ける"""
        experiment = Experiment(name="exp", variants=("A", "B"), status="running", traffic_percentage=0)
        engine = VariantAssignmentEngine(store, ABTestingConfig())

        decision = engine.assign(experiment, "user_001")

        assert decision.variant == "A"
        assert decision.source == AssignmentSource.TRAFFIC_GATE
        assert decision.recorded is True
        assert store.get_assignment("exp", "user_001").variant_name == "A"
        assert store.read_counts("exp")["A"].assignments == 1

        conversion = store.record_conversion("exp", "user_001", "buy")
        assert conversion.variant_name == "A"

    def test_traffic_gate_repeat_returns_existing(self, store):
        experiment = Experiment(name="exp", variants=("A", "B"), status="running", traffic_percentage=0)
        engine = VariantAssignmentEngine(store, ABTestingConfig())

        engine.assign(experiment, "user_001")
        decision = engine.assign(experiment, "user_001")

        assert decision.source == AssignmentSource.EXISTING
        assert store.read_counts("exp")["A"].assignments == 1

    def test_traffic_gate_not_recorded_when_disabled(self, store):
        experiment = Experiment(name="exp", variants=("A", "B"), status="running", traffic_percentage=0)
        engine = VariantAssignmentEngine(store, make_config(record_excluded_participants=False))

        decision = engine.assign(experiment, "user_001")

        assert decision.variant == "A"
        assert decision.source == AssignmentSource.TRAFFIC_GATE
        assert decision.recorded is False
        assert store.read_counts("exp") == {}


# ============================================================================
# TestEngineSelection
# ============================================================================


class TestEngineSelection:
    """バンディット → 適応配分 → ハッシュ の選択テスト"""

    def test_bandit_uses_rng_per_variant(self, store, experiment):
        """random() はバリアント順に1回ずつ呼ばれ、スコア最大を選ぶ"""
        rng = FakeRandom(0.1, 0.9)
        engine = VariantAssignmentEngine(store, ABTestingConfig(), rng)

        decision = engine.assign(experiment, "user_001")

        assert decision.variant == "B"
        assert decision.source == AssignmentSource.BANDIT
        assert rng.calls == 2

    def test_bandit_exploits_better_variant(self, store, experiment):
        counts = {
            "A": VariantCounts(assignments=100, conversions={"buy": 50}),
            "B": VariantCounts(assignments=100, conversions={}),
        }
        engine = VariantAssignmentEngine(store, ABTestingConfig(), FakeRandom(0.5))
        assert engine.select_bandit_variant(experiment, counts) == "A"

    def test_adaptive_when_bandit_disabled(self, store, experiment):
        engine = VariantAssignmentEngine(
            store, make_config(bandit_enabled=False), FakeRandom(0.9)
        )
        decision = engine.assign(experiment, "user_001")
        assert decision.source == AssignmentSource.ADAPTIVE
        assert decision.variant == "B"

    def test_effective_weights(self, store, experiment):
        counts = {
            "A": VariantCounts(assignments=100, conversions={"buy": 20}),
            "B": VariantCounts(assignments=100, conversions={}),
        }
        engine = VariantAssignmentEngine(store, ABTestingConfig())
        weights = dict(engine.effective_weights(experiment, counts))
        assert weights["A"] == pytest.approx(1.5)
        assert weights["B"] == pytest.approx(0.5)

    def test_hash_when_both_disabled(self, store, experiment):
        engine = VariantAssignmentEngine(
            store, make_config(bandit_enabled=False, adaptive_allocation_enabled=False)
        )
        decision = engine.assign(experiment, "user_001")

        assert decision.source == AssignmentSource.HASH
        assert decision.variant == hash_select_variant(
            experiment.name, "user_001", experiment.variants
        )

    def test_selection_failure_falls_back_to_hash(self, store, experiment):
        """乱数の失敗はハッシュ選択にフォールバックし、割り当ては記録される"""
        engine = VariantAssignmentEngine(store, ABTestingConfig(), FailingRandom())

        decision = engine.assign(experiment, "user_001")

        assert decision.source == AssignmentSource.HASH
        assert store.get_assignment(experiment.name, "user_001").variant_name == decision.variant

    def test_read_counts_failure_falls_back_to_hash(self, experiment):
        class UnreadableStore(InMemoryAggregateStore):
            def read_counts(self, experiment_name, variant_names=None):
                raise StorageError("counters unavailable")

        store = UnreadableStore()
        engine = VariantAssignmentEngine(store, ABTestingConfig(), FakeRandom(0.1, 0.9))

        decision = engine.assign(experiment, "user_001")

        assert decision.source == AssignmentSource.HASH
        assert decision.recorded is True

    def test_record_failure_is_raised(self, experiment):
        """記録の失敗は送出する（記録されていない割り当ては返さない）"""
        class BrokenStore(InMemoryAggregateStore):
            def record_assignment(self, *args, **kwargs):
                raise StorageError("write failed")

        engine = VariantAssignmentEngine(BrokenStore(), ABTestingConfig())
        with pytest.raises(StorageError):
            engine.assign(experiment, "user_001")
