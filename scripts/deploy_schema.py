#!/usr/bin/env python
# ============================================================================
# SCHEMA DEPLOYMENT SCRIPT
# ============================================================================
# EPOCH: 1 - JOB CORE
# PURPOSE: Deploy the jobcore schema to PostgreSQL using PydanticToSQL
# USAGE:
#   python scripts/deploy_schema.py --dry-run    # Preview SQL
#   python scripts/deploy_schema.py              # Execute deployment
#   python scripts/deploy_schema.py --status     # Check current status
# ============================================================================

import argparse
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import psycopg
from psycopg import sql

from core.schema import PydanticToSQL
from repositories.database import get_connection_string, mask_conninfo


def print_status(conn, schema: str) -> bool:
    """Print tables and enum types of the schema; False if it is missing."""
    row = conn.execute(
        "SELECT 1 FROM information_schema.schemata WHERE schema_name = %s", (schema,)
    ).fetchone()
    print(f"Schema exists: {row is not None}")
    if row is None:
        return False

    tables = conn.execute(
        """
        SELECT table_name, COUNT(*) FROM information_schema.columns
        WHERE table_schema = %s GROUP BY table_name ORDER BY table_name
        """,
        (schema,),
    ).fetchall()
    print(f"\nTables ({len(tables)}):")
    for table, columns in tables:
        count = conn.execute(
            sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(schema, table))
        ).fetchone()[0]
        print(f"  - {schema}.{table} ({columns} columns, {count} rows)")

    enums = conn.execute(
        """
        SELECT t.typname FROM pg_type t JOIN pg_namespace n ON n.oid = t.typnamespace
        WHERE n.nspname = %s AND t.typtype = 'e' ORDER BY t.typname
        """,
        (schema,),
    ).fetchall()
    print(f"\nEnum types ({len(enums)}):")
    for (name,) in enums:
        print(f"  - {name}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Deploy the jobcore schema to PostgreSQL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/deploy_schema.py --dry-run     # Print DDL without executing
  python scripts/deploy_schema.py               # Deploy schema
  python scripts/deploy_schema.py --status      # Check current installation

Environment Variables:
  DATABASE_URL          Full PostgreSQL connection string
  POSTGRES_HOST         Database host (default: localhost)
  POSTGRES_DB           Database name (default: postgres)
  POSTGRES_USER         Database user (default: postgres)
  POSTGRES_PASSWORD     Database password
  POSTGRES_PORT         Database port (default: 5432)
  POSTGRES_SSLMODE      SSL mode (default: require)
        """
    )
    parser.add_argument("--dry-run", action="store_true", help="Print DDL without executing")
    parser.add_argument("--status", action="store_true", help="Check current installation status")
    parser.add_argument("--schema", type=str, default="jobcore", help="Target schema (default: jobcore)")
    parser.add_argument(
        "--destructive",
        action="store_true",
        help="Drop and recreate enum types (development only)",
    )
    parser.add_argument("--connection", type=str, help="PostgreSQL connection string (overrides environment)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    generator = PydanticToSQL(schema_name=args.schema, destructive=args.destructive)

    print("=" * 70)
    print("JOB CORE - Schema Deployment")
    print("=" * 70)
    print(f"Schema: {args.schema}")

    if args.dry_run:
        print("Mode: DRY RUN\n")
        statements = generator.generate_all()
        for stmt in statements:
            print(stmt.as_string(None).strip() + ";\n")
        print("=" * 70)
        print(f"{len(statements)} statements")
        return

    conninfo = args.connection or get_connection_string()
    print(f"Target: {mask_conninfo(conninfo)}")
    print("=" * 70)

    try:
        with psycopg.connect(conninfo, autocommit=False) as conn:
            if args.status:
                print("\n[STATUS CHECK]\n")
                if not print_status(conn, args.schema):
                    sys.exit(1)
                return

            print("\nMode: EXECUTE\n")
            count = generator.execute(conn)
            conn.commit()
    except psycopg.Error as e:
        print(f"\nDeployment failed: {type(e).__name__}: {e}")
        sys.exit(1)

    print(f"Executed {count} statements")
    print("=" * 70)


if __name__ == "__main__":
    main()
