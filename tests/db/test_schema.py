# A/Bテスト用スキーマのテスト

from unittest.mock import MagicMock

from experiment_engine.db.schema import SCHEMA_STATEMENTS, init_schema


def _mock_db():
    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=None)
    db = MagicMock()
    db.get_cursor = MagicMock(return_value=cursor)
    return db, cursor


class TestSchema:
    """スキーマ定義のテスト"""

    def test_tables_defined(self):
        ddl = "\n".join(SCHEMA_STATEMENTS)
        for table in (
            "ab_experiments",
            "ab_assignments",
            "ab_conversions",
            "ab_variant_counters",
            "ab_goal_counters",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in ddl

    def test_assignment_is_unique_per_participant(self):
        """upsert の前提となる一意制約"""
        assignments = next(s for s in SCHEMA_STATEMENTS if "TABLE IF NOT EXISTS ab_assignments" in s)
        assert "UNIQUE (experiment_name, participant_id)" in assignments

    def test_counter_primary_keys(self):
        """ON CONFLICT の対象となる主キー"""
        ddl = "\n".join(SCHEMA_STATEMENTS)
        assert "PRIMARY KEY (experiment_name, variant_name)" in ddl
        assert "PRIMARY KEY (experiment_name, variant_name, goal)" in ddl

    def test_init_schema_executes_all_statements(self):
        db, cursor = _mock_db()

        init_schema(db)

        assert cursor.execute.call_count == len(SCHEMA_STATEMENTS)
        db.get_cursor.assert_called_once_with()
