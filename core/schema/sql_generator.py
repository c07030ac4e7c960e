# ============================================================================
# PYDANTIC TO SQL GENERATOR
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - DDL generation from Pydantic models
# PURPOSE: Generate PostgreSQL CREATE statements from Pydantic models
# CREATED: 12 OCT 2026
# ============================================================================
"""
Pydantic to PostgreSQL Schema Generator.

Pydantic models are the SINGLE SOURCE OF TRUTH for schema.

Model Metadata Convention:
    Models define SQL metadata via ClassVar attributes:
    - __sql_table__: Table name
    - __sql_schema__: Schema name
    - __sql_primary_key__: Primary key column(s) - string or list
    - __sql_foreign_keys__: Dict of {column: "schema.table(column)"}
    - __sql_indexes__: List of index definitions, either
        (name, columns) / (name, columns, partial_where)
      or
        {"name", "columns", "unique", "partial_where", "desc_columns"}

Usage:
    generator = PydanticToSQL(schema_name="jobcore")
    statements = generator.generate_all()
    for stmt in statements:
        cursor.execute(stmt)
"""

import re
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Type, Union, get_args, get_origin
from uuid import UUID

from annotated_types import MaxLen
from psycopg import sql
from pydantic import BaseModel
from pydantic.fields import FieldInfo

from core.schema.ddl_utils import IndexBuilder, TriggerBuilder, SchemaUtils

logger = logging.getLogger(__name__)


class PydanticToSQL:
    """
    Convert Pydantic models to PostgreSQL DDL statements.

    Analyzes Pydantic models with __sql_* metadata and generates
    corresponding CREATE TYPE / TABLE / INDEX / TRIGGER statements.
    """

    TYPE_MAP = {
        str: "VARCHAR",
        int: "INTEGER",
        float: "DOUBLE PRECISION",
        bool: "BOOLEAN",
        datetime: "TIMESTAMPTZ",
        UUID: "UUID",
        dict: "JSONB",
        Dict: "JSONB",
        list: "JSONB",
        List: "JSONB",
    }

    def __init__(self, schema_name: str = "jobcore", destructive: bool = False):
        """
        Args:
            schema_name: Default PostgreSQL schema name
            destructive: If True, use DROP+CREATE for enums (data loss risk).
                        If False (default), create only when missing.
        """
        self.schema_name = schema_name
        self.destructive = destructive
        self.enums: Dict[str, Type[Enum]] = {}

    # =========================================================================
    # METADATA EXTRACTION
    # =========================================================================

    @staticmethod
    def get_model_metadata(model: Type[BaseModel]) -> Dict[str, Any]:
        """
        Extract SQL DDL metadata from a Pydantic model.

        Looks for __sql_* attributes (which Python mangles to _ClassName__sql_*).
        """
        def get_attr(name: str, default=None):
            mangled = f"_{model.__name__}__{name}"
            return getattr(model, mangled, getattr(model, f"__{name}", default))

        metadata = {
            "table": get_attr("sql_table__"),
            "schema": get_attr("sql_schema__", "jobcore"),
            "primary_key": get_attr("sql_primary_key__", []),
            "foreign_keys": get_attr("sql_foreign_keys__", {}),
            "indexes": get_attr("sql_indexes__", []),
        }

        if isinstance(metadata["primary_key"], str):
            metadata["primary_key"] = [metadata["primary_key"]]

        return metadata

    # =========================================================================
    # TYPE CONVERSION
    # =========================================================================

    @staticmethod
    def enum_type_name(enum_class: Type[Enum]) -> str:
        """JobRunStatus -> job_run_status"""
        return re.sub(r"(?<!^)(?=[A-Z])", "_", enum_class.__name__).lower()

    def python_type_to_sql(self, field_type: Type, field_info: FieldInfo) -> str:
        """Convert a model field's Python type to a PostgreSQL type string."""
        actual_type = field_type
        origin = get_origin(field_type)

        if origin is Union:
            args = [a for a in get_args(field_type) if a is not type(None)]
            actual_type = args[0] if args else str
            origin = get_origin(actual_type)

        if origin in (dict, Dict, list, List):
            return "JSONB"

        if actual_type is str:
            for constraint in getattr(field_info, "metadata", None) or []:
                if isinstance(constraint, MaxLen):
                    return f"VARCHAR({constraint.max_length})"
            return "TEXT"

        if isinstance(actual_type, type) and issubclass(actual_type, Enum):
            enum_name = self.enum_type_name(actual_type)
            self.enums[enum_name] = actual_type
            return enum_name

        return self.TYPE_MAP.get(actual_type, "JSONB")

    @staticmethod
    def _is_optional(field_type: Type) -> bool:
        return get_origin(field_type) is Union and type(None) in get_args(field_type)

    # =========================================================================
    # ENUM GENERATION
    # =========================================================================

    def generate_enum(self, enum_name: str, enum_class: Type[Enum], schema: str) -> List[sql.Composable]:
        """Generate PostgreSQL ENUM type DDL."""
        values_list = [member.value for member in enum_class]

        if self.destructive:
            return [
                sql.SQL("DROP TYPE IF EXISTS {}.{} CASCADE").format(
                    sql.Identifier(schema), sql.Identifier(enum_name)
                ),
                sql.SQL("CREATE TYPE {}.{} AS ENUM ({})").format(
                    sql.Identifier(schema),
                    sql.Identifier(enum_name),
                    sql.SQL(", ").join(sql.Literal(v) for v in values_list),
                ),
            ]

        values_str = ", ".join(f"'{v}'" for v in values_list)
        do_block = f"""
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{enum_name}' AND typnamespace = (SELECT oid FROM pg_namespace WHERE nspname = '{schema}')) THEN
        CREATE TYPE "{schema}"."{enum_name}" AS ENUM ({values_str});
    END IF;
END$$
"""
        return [sql.SQL(do_block)]

    # =========================================================================
    # TABLE GENERATION
    # =========================================================================

    def _column_default(self, field_name: str, field_info: FieldInfo, sql_type: str, schema: str) -> List[sql.Composable]:
        default = field_info.default
        if field_info.default_factory is not None:
            if field_name in ("created_at", "updated_at"):
                return [sql.SQL(" DEFAULT NOW()")]
            if sql_type == "JSONB":
                factory_value = field_info.default_factory()
                return [sql.SQL(" DEFAULT '[]'::jsonb" if isinstance(factory_value, list) else " DEFAULT '{}'::jsonb")]
            return []
        if default is None or default is ...:
            return []
        if isinstance(default, Enum):
            return [
                sql.SQL(" DEFAULT "),
                sql.Literal(default.value),
                sql.SQL("::"),
                sql.Identifier(schema),
                sql.SQL("."),
                sql.Identifier(sql_type),
            ]
        if isinstance(default, bool):
            return [sql.SQL(" DEFAULT true" if default else " DEFAULT false")]
        if isinstance(default, (str, int, float)):
            return [sql.SQL(" DEFAULT "), sql.Literal(default)]
        return []

    def generate_table(self, model: Type[BaseModel]) -> sql.Composed:
        """Generate CREATE TABLE DDL from a Pydantic model."""
        meta = self.get_model_metadata(model)
        table_name = meta["table"]
        schema_name = meta["schema"]
        primary_key = meta["primary_key"]

        if not table_name:
            raise ValueError(f"Model {model.__name__} missing __sql_table__ attribute")

        logger.debug(f"Generating table {schema_name}.{table_name} from {model.__name__}")

        columns = []
        constraints = []

        for field_name, field_info in model.model_fields.items():
            field_type = field_info.annotation
            sql_type_str = self.python_type_to_sql(field_type, field_info)

            column_parts: List[sql.Composable] = [sql.Identifier(field_name), sql.SQL(" ")]

            if sql_type_str in self.enums:
                column_parts.extend([
                    sql.Identifier(schema_name),
                    sql.SQL("."),
                    sql.Identifier(sql_type_str),
                ])
            else:
                column_parts.append(sql.SQL(sql_type_str))

            if not self._is_optional(field_type) and field_name not in primary_key:
                column_parts.append(sql.SQL(" NOT NULL"))

            column_parts.extend(self._column_default(field_name, field_info, sql_type_str, schema_name))
            columns.append(sql.SQL("").join(column_parts))

        if primary_key:
            constraints.append(
                sql.SQL("PRIMARY KEY ({})").format(
                    sql.SQL(", ").join(sql.Identifier(col) for col in primary_key)
                )
            )

        for fk_column, fk_reference in meta["foreign_keys"].items():
            match = re.match(r"(\w+)\.(\w+)\((\w+)\)", fk_reference)
            if match:
                ref_schema, ref_table, ref_column = match.groups()
                constraints.append(
                    sql.SQL("FOREIGN KEY ({}) REFERENCES {}.{} ({}) ON DELETE CASCADE").format(
                        sql.Identifier(fk_column),
                        sql.Identifier(ref_schema),
                        sql.Identifier(ref_table),
                        sql.Identifier(ref_column),
                    )
                )

        return sql.SQL("CREATE TABLE IF NOT EXISTS {}.{} ({})").format(
            sql.Identifier(schema_name),
            sql.Identifier(table_name),
            sql.SQL(", ").join(columns + constraints),
        )

    # =========================================================================
    # INDEX GENERATION
    # =========================================================================

    def generate_indexes(self, model: Type[BaseModel]) -> List[sql.Composed]:
        """Generate CREATE INDEX statements from a model's __sql_indexes__."""
        meta = self.get_model_metadata(model)
        table_name = meta["table"]
        schema_name = meta["schema"]

        result = []

        for idx_def in meta.get("indexes", []):
            if isinstance(idx_def, tuple):
                name = idx_def[0]
                columns = idx_def[1] if len(idx_def) > 1 else []
                partial_where = idx_def[2] if len(idx_def) > 2 else None
                unique = False
                desc_columns = ()
            elif isinstance(idx_def, dict):
                name = idx_def.get("name")
                columns = idx_def.get("columns", [])
                partial_where = idx_def.get("partial_where")
                unique = idx_def.get("unique", False)
                desc_columns = idx_def.get("desc_columns", ())
            else:
                continue

            if not columns or not name:
                continue

            if unique:
                result.append(IndexBuilder.unique(
                    schema_name, table_name, columns, name=name, partial_where=partial_where,
                ))
            else:
                result.append(IndexBuilder.btree(
                    schema_name, table_name, columns,
                    name=name,
                    partial_where=partial_where,
                    desc_columns=desc_columns,
                ))

        return result

    # =========================================================================
    # COMPLETE SCHEMA GENERATION
    # =========================================================================

    @staticmethod
    def table_models() -> List[Type[BaseModel]]:
        """Persisted models in dependency (foreign key) order."""
        from core.models import (
            JobRun,
            IdempotencyRecord,
            SagaRun,
            SagaAction,
            ChatThread,
            ChatMessage,
            ChatTurn,
        )
        return [JobRun, IdempotencyRecord, SagaRun, SagaAction, ChatThread, ChatMessage, ChatTurn]

    def generate_all(self) -> List[sql.Composable]:
        """Generate complete DDL for all job core models."""
        models = self.table_models()
        statements: List[sql.Composable] = [
            SchemaUtils.create_schema(self.schema_name),
            SchemaUtils.set_search_path(self.schema_name),
        ]

        # Tables first register their enum types; emit types ahead of tables.
        tables = [self.generate_table(m) for m in models]
        for enum_name, enum_class in self.enums.items():
            statements.extend(self.generate_enum(enum_name, enum_class, self.schema_name))

        statements.extend(tables)
        for model in models:
            statements.extend(self.generate_indexes(model))

        statements.append(TriggerBuilder.updated_at_function(self.schema_name))
        for model in models:
            meta = self.get_model_metadata(model)
            if "updated_at" in model.model_fields:
                statements.extend(TriggerBuilder.updated_at_trigger(self.schema_name, meta["table"]))

        logger.info(f"Generated {len(statements)} DDL statements for schema {self.schema_name}")
        return statements

    def execute(self, conn, dry_run: bool = False) -> int:
        """
        Execute all DDL statements on a synchronous psycopg connection.

        Returns:
            Number of statements executed
        """
        statements = self.generate_all()

        if dry_run:
            for stmt in statements:
                logger.info(f"[DRY RUN] {stmt.as_string(conn)[:100]}...")
            return len(statements)

        with conn.cursor() as cur:
            for stmt in statements:
                cur.execute(stmt)

        logger.info(f"Executed {len(statements)} DDL statements")
        return len(statements)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["PydanticToSQL"]
