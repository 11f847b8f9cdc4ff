# 実験ステータス遷移
"""
実験ライフサイクルの状態遷移

    draft → running → paused → running
                   └→ completed ←┘

completed は終端。遷移表にない遷移は InvalidTransitionError。
副作用なし（永続化は呼び出し側の責務）。
"""

from typing import Dict, FrozenSet, Union

from experiment_engine.ab_testing.errors import InvalidTransitionError
from experiment_engine.ab_testing.models import ExperimentStatus


TRANSITIONS: Dict[ExperimentStatus, FrozenSet[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: frozenset({ExperimentStatus.RUNNING}),
    ExperimentStatus.RUNNING: frozenset(
        {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED}
    ),
    ExperimentStatus.PAUSED: frozenset(
        {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED}
    ),
    ExperimentStatus.COMPLETED: frozenset(),
}

StatusLike = Union[ExperimentStatus, str]


def allowed_targets(current: StatusLike) -> FrozenSet[ExperimentStatus]:
    """現在のステータスから遷移可能なステータス"""
    return TRANSITIONS[ExperimentStatus.parse(current)]


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    return ExperimentStatus.parse(target) in allowed_targets(current)


def transition(current: StatusLike, target: StatusLike) -> ExperimentStatus:
    """ステータス遷移を検証して新しいステータスを返す

    Args:
        current: 現在のステータス
        target: 遷移先のステータス

    Returns:
        遷移後のステータス（= target）

    Raises:
        InvalidTransitionError: 遷移表にない遷移の場合（同一ステータスへの遷移も含む）
        ExperimentConfigurationError: 未知のステータス文字列の場合
    """
    current_status = ExperimentStatus.parse(current)
    target_status = ExperimentStatus.parse(target)

    if target_status not in TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status, target_status)

    return target_status


def accepts_assignments(status: StatusLike) -> bool:
    """新規割り当てを受け付けるか（running のみ）"""
    return ExperimentStatus.parse(status) == ExperimentStatus.RUNNING


def accepts_conversions(status: StatusLike, allow_paused: bool = False) -> bool:
    """コンバージョンを受け付けるか

    running は常に受け付ける。paused は allow_paused の場合のみ。
    """
    status = ExperimentStatus.parse(status)
    if status == ExperimentStatus.RUNNING:
        return True
    return allow_paused and status == ExperimentStatus.PAUSED
