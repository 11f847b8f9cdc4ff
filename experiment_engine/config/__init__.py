# Config モジュール
from experiment_engine.config.ab_config import ABTestingConfig, ab_config

__all__ = [
    "ABTestingConfig",
    "ab_config",
]
