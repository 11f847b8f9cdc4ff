# A/Bテスト 例外定義
"""
A/Bテストエンジンの例外階層

- 設定エラー: 実験・バリアント・ゴールが存在しない、トラフィック率が不正（リトライ不可）
- 状態エラー: 不正なステータス遷移、割り当てのないコンバージョン
- ストレージエラー: バックエンドの一時的な失敗（リトライ可能）
"""

from typing import Any, Optional


class ExperimentError(Exception):
    """A/Bテストエンジンの基底例外"""

    retryable: bool = False


# ===== 設定エラー =====


class ExperimentConfigurationError(ExperimentError, ValueError):
    """実験定義が不正な場合のエラー"""
    pass


class ExperimentNotFoundError(ExperimentConfigurationError, LookupError):
    """実験が見つからない場合のエラー"""

    def __init__(self, experiment_name: str):
        super().__init__(f"Experiment '{experiment_name}' not found")
        self.experiment_name = experiment_name


class DuplicateExperimentError(ExperimentConfigurationError):
    """同名の実験が既に登録されている場合のエラー"""

    def __init__(self, experiment_name: str):
        super().__init__(f"Experiment '{experiment_name}' already exists")
        self.experiment_name = experiment_name


class VariantNotFoundError(ExperimentConfigurationError, LookupError):
    """バリアントが実験に存在しない場合のエラー"""

    def __init__(self, experiment_name: str, variant_name: str):
        super().__init__(
            f"Variant '{variant_name}' is not defined in experiment '{experiment_name}'"
        )
        self.experiment_name = experiment_name
        self.variant_name = variant_name


class GoalNotFoundError(ExperimentConfigurationError, LookupError):
    """ゴールが実験に存在しない場合のエラー"""

    def __init__(self, experiment_name: str, goal: str):
        super().__init__(f"Goal '{goal}' is not defined in experiment '{experiment_name}'")
        self.experiment_name = experiment_name
        self.goal = goal


class InvalidTrafficPercentageError(ExperimentConfigurationError):
    """トラフィック率が 0-100 の範囲外の場合のエラー"""

    def __init__(self, traffic_percentage: Any):
        super().__init__(
            f"Traffic percentage must be between 0 and 100, got {traffic_percentage!r}"
        )
        self.traffic_percentage = traffic_percentage


# ===== 状態エラー =====


class ExperimentStateError(ExperimentError):
    """実験の状態が操作を許可しない場合のエラー"""
    pass


class InvalidTransitionError(ExperimentStateError):
    """ステータス遷移表にない遷移を要求した場合のエラー"""

    def __init__(self, current: Any, target: Any):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Invalid status transition: '{current_value}' -> '{target_value}'"
        )
        self.current = current
        self.target = target


class NoAssignmentError(ExperimentStateError):
    """有効な割り当てのない参加者のコンバージョンを記録しようとした場合のエラー"""

    def __init__(
        self,
        experiment_name: str,
        participant_id: Optional[str],
        message: Optional[str] = None,
    ):
        super().__init__(
            message
            or f"Participant '{participant_id}' has no assignment "
            f"in experiment '{experiment_name}'"
        )
        self.experiment_name = experiment_name
        self.participant_id = participant_id


class ExperimentNotRunningError(NoAssignmentError):
    """実験がコンバージョンを受け付けない状態の場合のエラー

    実行中でない実験の割り当ては有効でないため NoAssignmentError として扱う。
    """

    def __init__(self, experiment_name: str, status: Any, participant_id: Optional[str] = None):
        status_value = getattr(status, "value", status)
        super().__init__(
            experiment_name,
            participant_id,
            f"Experiment '{experiment_name}' is not running (status: '{status_value}')",
        )
        self.status = status


class ConcurrentModificationError(ExperimentStateError):
    """楽観的ロックのバージョンが一致しない場合のエラー"""

    def __init__(self, experiment_name: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Experiment '{experiment_name}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.experiment_name = experiment_name
        self.expected_version = expected_version
        self.actual_version = actual_version


# ===== ストレージエラー =====


class StorageError(ExperimentError):
    """ストレージ操作の失敗（呼び出し側でリトライ可能）"""

    retryable = True
