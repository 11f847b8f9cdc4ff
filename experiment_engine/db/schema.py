# A/Bテスト用スキーマ定義
"""
実験カタログ・割り当てログ・コンバージョンログ・派生カウンタのDDL

ab_assignments / ab_conversions が正（イベントログ）で、
ab_variant_counters / ab_goal_counters はログから再計算できる派生データ。
"""

import logging
from typing import List

from experiment_engine.db.connection import DatabaseConnection


logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS ab_experiments (
        name TEXT PRIMARY KEY,
        description TEXT,
        variants JSONB NOT NULL,
        traffic_percentage DOUBLE PRECISION NOT NULL DEFAULT 100,
        goals JSONB NOT NULL DEFAULT '[]'::jsonb,
        status TEXT NOT NULL DEFAULT 'draft',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at TIMESTAMPTZ,
        ended_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ab_assignments (
        id BIGSERIAL PRIMARY KEY,
        experiment_name TEXT NOT NULL,
        participant_id TEXT NOT NULL,
        variant_name TEXT NOT NULL,
        context JSONB NOT NULL DEFAULT '{}'::jsonb,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (experiment_name, participant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ab_conversions (
        id BIGSERIAL PRIMARY KEY,
        experiment_name TEXT NOT NULL,
        participant_id TEXT NOT NULL,
        goal TEXT NOT NULL,
        variant_name TEXT NOT NULL,
        converted_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_ab_conversions_experiment
        ON ab_conversions (experiment_name, variant_name, goal)
    """,
    """
    CREATE TABLE IF NOT EXISTS ab_variant_counters (
        experiment_name TEXT NOT NULL,
        variant_name TEXT NOT NULL,
        assignments BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (experiment_name, variant_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ab_goal_counters (
        experiment_name TEXT NOT NULL,
        variant_name TEXT NOT NULL,
        goal TEXT NOT NULL,
        conversions BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (experiment_name, variant_name, goal)
    )
    """,
]


def init_schema(db: DatabaseConnection) -> None:
    """テーブルを作成（既存テーブルはそのまま）

    Args:
        db: データベース接続
    """
    with db.get_cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
    logger.info("A/B testing schema initialized (%d statements)", len(SCHEMA_STATEMENTS))
