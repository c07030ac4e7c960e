# ============================================================================
# SCHEMA GENERATION TESTS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Tests - DDL generated from Pydantic models
# PURPOSE: Verify tables, enum types and the runnable-singleton index
# CREATED: 12 OCT 2026
# ============================================================================
"""
Schema Generation Tests

Covers:
1. Every persisted model becomes a table in the jobcore schema
2. Enum types are emitted ahead of the tables that use them
3. Column types, NOT NULL and defaults
4. Partial unique index enforcing one runnable job per entity

Run with:
    pytest tests/test_schema.py -v
"""

import pytest

from core.models import JobRun
from core.models.job_run import RUNNABLE_PREDICATE
from core.schema import IndexBuilder, PydanticToSQL


def render(statement) -> str:
    return statement.as_string(None)


@pytest.fixture
def ddl():
    return [render(s) for s in PydanticToSQL().generate_all()]


class TestGenerateAll:

    @pytest.mark.parametrize("table", [
        "job_run", "idempotency_key", "saga_run", "saga_action", "chat_thread", "chat_message", "chat_turn",
    ])
    def test_tables_created(self, ddl, table):
        assert any(f'CREATE TABLE IF NOT EXISTS "jobcore"."{table}"' in s for s in ddl)

    def test_schema_comes_first(self, ddl):
        assert ddl[0] == 'CREATE SCHEMA IF NOT EXISTS "jobcore"'

    def test_enum_types_precede_tables(self, ddl):
        first_table = next(i for i, s in enumerate(ddl) if s.startswith("CREATE TABLE"))
        status_enum = next(i for i, s in enumerate(ddl) if '"job_run_status"' in s and "CREATE TYPE" in s)
        assert status_enum < first_table

    def test_singleton_index_is_partial_unique(self, ddl):
        index = next(s for s in ddl if "idx_job_run_singleton" in s)
        assert index.startswith("CREATE UNIQUE INDEX IF NOT EXISTS")
        assert '"owner_user_id", "entity_type", "entity_id", "job_type"' in index
        assert index.endswith(f"WHERE entity_id IS NOT NULL AND {RUNNABLE_PREDICATE}")

    def test_updated_at_triggers(self, ddl):
        triggers = [s for s in ddl if "CREATE TRIGGER" in s]
        assert any('"job_run"' in s for s in triggers)
        assert any('"chat_turn"' in s for s in triggers)


class TestJobRunTable:

    @pytest.fixture
    def table(self):
        generator = PydanticToSQL()
        return render(generator.generate_table(JobRun))

    def test_column_types(self, table):
        assert '"job_type" VARCHAR(64) NOT NULL' in table
        assert '"payload" JSONB NOT NULL DEFAULT \'{}\'::jsonb' in table
        assert '"entity_id" UUID' in table
        assert '"run_after" TIMESTAMPTZ' in table
        assert '"retryable" BOOLEAN NOT NULL DEFAULT true' in table

    def test_enum_column_default(self, table):
        assert '"status" "jobcore"."job_run_status" NOT NULL DEFAULT \'queued\'::"jobcore"."job_run_status"' in table

    def test_optional_columns_nullable(self, table):
        assert '"locked_at" TIMESTAMPTZ,' in table
        assert '"deleted_at" TIMESTAMPTZ NOT NULL' not in table

    def test_primary_key(self, table):
        assert 'PRIMARY KEY ("id")' in table


class TestIndexBuilder:

    def test_desc_columns(self):
        stmt = IndexBuilder.btree("jobcore", "job_run", ["entity_id", "created_at"], desc_columns=["created_at"])
        assert render(stmt) == (
            'CREATE INDEX IF NOT EXISTS "idx_job_run_entity_id_created_at" '
            'ON "jobcore"."job_run" ("entity_id", "created_at" DESC)'
        )

    def test_unique_default_name(self):
        stmt = IndexBuilder.unique("jobcore", "saga_run", "root_job_id")
        assert '"idx_unique_saga_run_root_job_id"' in render(stmt)
