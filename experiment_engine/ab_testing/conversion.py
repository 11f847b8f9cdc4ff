# コンバージョン記録
"""
ゴール達成を参加者の割り当て済みバリアントに記録する

前提条件:
- 実験が running（allow_paused_conversions の場合は paused も可）。それ以外は割り当てが無効として
  NoAssignmentError の一種である ExperimentNotRunningError
- ゴールが実験に定義されている（ゴール未定義の実験は任意のゴールを受け付ける）
- 参加者に割り当てがある（なければ NoAssignmentError）
"""

import logging
from typing import Optional

from experiment_engine.ab_testing.aggregate_store import AggregateStore
from experiment_engine.ab_testing.errors import (
    ExperimentConfigurationError,
    ExperimentNotRunningError,
    GoalNotFoundError,
)
from experiment_engine.ab_testing.models import Conversion, Experiment
from experiment_engine.ab_testing.status_machine import accepts_conversions
from experiment_engine.config.ab_config import ABTestingConfig


logger = logging.getLogger(__name__)


class ConversionRecorder:
    """コンバージョン記録

    使用例:
        recorder = ConversionRecorder(store, config)
        conversion = recorder.record(experiment, "user_001", "completed_purchase")
        conversion.variant_name  # => 割り当て時点のバリアント
    """

    def __init__(
        self,
        store: AggregateStore,
        config: Optional[ABTestingConfig] = None,
    ):
        self.store = store
        self.config = config or ABTestingConfig()

    def record(
        self,
        experiment: Experiment,
        participant_id: str,
        goal: str,
    ) -> Conversion:
        """コンバージョンを記録

        Args:
            experiment: 対象の実験
            participant_id: 参加者ID
            goal: ゴール名

        Returns:
            記録した Conversion

        Raises:
            ExperimentNotRunningError: 実験がコンバージョンを受け付けない状態の場合（NoAssignmentError の一種）
            GoalNotFoundError: 実験に定義されていないゴールの場合
            NoAssignmentError: 参加者に割り当てがない場合
            StorageError: ストレージ障害
        """
        if not goal:
            raise ExperimentConfigurationError("Goal is required")

        if not accepts_conversions(experiment.status, self.config.allow_paused_conversions):
            raise ExperimentNotRunningError(experiment.name, experiment.status, participant_id)

        if experiment.goals and not experiment.has_goal(goal):
            raise GoalNotFoundError(experiment.name, goal)

        conversion = self.store.record_conversion(experiment.name, participant_id, goal)
        logger.debug(
            "Recorded conversion: experiment=%s participant=%s goal=%s variant=%s",
            experiment.name, participant_id, goal, conversion.variant_name,
        )
        return conversion
