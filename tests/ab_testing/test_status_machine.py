# ステータス遷移テスト
"""
status_machine モジュールの単体テスト

検証観点:
- 遷移表の健全性: 4×4 の全組み合わせで、表にある遷移のみ成功する
- completed は終端
- 割り当て・コンバージョンの受付条件
"""

import itertools

import pytest

from experiment_engine.ab_testing.errors import (
    ExperimentConfigurationError,
    ExperimentStateError,
    InvalidTransitionError,
)
from experiment_engine.ab_testing.models import ExperimentStatus
from experiment_engine.ab_testing.status_machine import (
    TRANSITIONS,
    accepts_assignments,
    accepts_conversions,
    allowed_targets,
    can_transition,
    transition,
)


DRAFT = ExperimentStatus.DRAFT
RUNNING = ExperimentStatus.RUNNING
PAUSED = ExperimentStatus.PAUSED
COMPLETED = ExperimentStatus.COMPLETED

VALID_TRANSITIONS = {
    (DRAFT, RUNNING),
    (RUNNING, PAUSED),
    (RUNNING, COMPLETED),
    (PAUSED, RUNNING),
    (PAUSED, COMPLETED),
}


class TestTransitionTable:
    """遷移表のテスト"""

    @pytest.mark.parametrize(
        "current, target",
        list(itertools.product(list(ExperimentStatus), repeat=2)),
    )
    def test_all_pairs(self, current, target):
        """16通りすべてで、表にある遷移だけが成功する"""
        if (current, target) in VALID_TRANSITIONS:
            assert transition(current, target) == target
            assert can_transition(current, target) is True
        else:
            with pytest.raises(InvalidTransitionError):
                transition(current, target)
            assert can_transition(current, target) is False

    def test_completed_is_terminal(self):
        assert allowed_targets(COMPLETED) == frozenset()
        assert TRANSITIONS[COMPLETED] == frozenset()

    def test_same_state_is_rejected(self):
        """同一ステータスへの遷移もエラー"""
        with pytest.raises(InvalidTransitionError, match="'running' -> 'running'"):
            transition(RUNNING, RUNNING)

    def test_accepts_strings(self):
        assert transition("draft", "Running") == RUNNING

    def test_unknown_status(self):
        with pytest.raises(ExperimentConfigurationError, match="Unknown experiment status"):
            transition("draft", "archived")

    def test_invalid_transition_is_state_error(self):
        """InvalidTransitionError は ExperimentStateError のサブクラス"""
        with pytest.raises(ExperimentStateError) as exc_info:
            transition(COMPLETED, RUNNING)
        assert exc_info.value.current == COMPLETED
        assert exc_info.value.target == RUNNING
        assert exc_info.value.retryable is False


class TestAcceptance:
    """割り当て・コンバージョン受付のテスト"""

    @pytest.mark.parametrize(
        "status, expected",
        [(DRAFT, False), (RUNNING, True), (PAUSED, False), (COMPLETED, False)],
    )
    def test_accepts_assignments(self, status, expected):
        assert accepts_assignments(status) is expected

    @pytest.mark.parametrize(
        "status, allow_paused, expected",
        [
            (RUNNING, False, True),
            (RUNNING, True, True),
            (PAUSED, False, False),
            (PAUSED, True, True),
            (DRAFT, True, False),
            (COMPLETED, True, False),
        ],
    )
    def test_accepts_conversions(self, status, allow_paused, expected):
        assert accepts_conversions(status, allow_paused) is expected
