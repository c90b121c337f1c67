"""Versioned schema definitions and migrations.

Each ``database/schema/vN.py`` module exposes a ``schema`` dict:

    {'version': N, 'tables': [...], 'migrations': ['SQL', ...]}

``tables`` always describes the complete schema as of version N and is used
for fresh installs. ``migrations`` upgrades a database from version N-1.

Lock exclusivity depends on the partial unique index over escrow rows in
'locked' status, so startup refuses to continue if that index is missing.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_PACKAGE = 'database.schema'
DEFAULT_SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

# Indexes the escrow ledger relies on for correctness, not just speed
REQUIRED_INDEXES = {
    'idx_escrow_one_active_lock': 'escrow_transactions'
}

VERSION_TABLE_DDL = '''
    CREATE TABLE IF NOT EXISTS schema_version (
        version INT8 PRIMARY KEY,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
'''

class SchemaManager:
    """Applies schema versions to the inventory database."""

    def __init__(self, pool, schema_dir: Optional[Path] = None) -> None:
        """
        Args:
            pool: Database connection pool
            schema_dir: Directory holding the vN.py schema modules
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir) if schema_dir else DEFAULT_SCHEMA_DIR
        self.current_version = 0

    async def initialize(self) -> None:
        """Bring the database up to the latest schema version.

        Raises:
            DatabaseSchemaError: If no schema is defined, a migration fails or a
                required index is missing afterwards
        """
        schemas = self.load_schema_files()
        if not schemas:
            raise DatabaseSchemaError(f"No schema versions found in {self._schema_dir}")

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(VERSION_TABLE_DDL)
                self.current_version = await conn.fetchval(
                    'SELECT coalesce(max(version), 0) FROM schema_version'
                )

                target = max(schemas)
                if self.current_version >= target:
                    logger.info(f"Schema is up to date (version {self.current_version})")
                elif self.current_version == 0:
                    await self._install(conn, schemas[target])
                else:
                    await self._upgrade(conn, schemas, target)

                await self.verify(conn)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    def load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Import every vN.py module, keyed and ordered by version.

        Raises:
            DatabaseSchemaError: If a module has no ``schema`` or its version
                disagrees with its file name
        """
        schemas: Dict[int, Dict[str, Any]] = {}
        if not self._schema_dir.exists():
            return schemas

        for path in self._schema_dir.glob('v*.py'):
            if not path.stem[1:].isdigit():
                logger.warning(f"Skipping schema file with invalid name: {path.name}")
                continue
            version = int(path.stem[1:])

            module = importlib.import_module(f"{SCHEMA_PACKAGE}.{path.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"{path.name} does not define 'schema'")
            if schema.get('version') != version:
                raise DatabaseSchemaError(
                    f"{path.name} declares version {schema.get('version')}, expected {version}"
                )
            schemas[version] = schema

        return dict(sorted(schemas.items()))

    def schema_statements(self, schema: Dict[str, Any]) -> List[str]:
        """DDL creating a schema from scratch.

        All tables come first so that foreign keys never reference a table
        that does not exist yet; indexes follow their table's foreign keys.
        """
        tables = schema.get('tables', [])
        statements = [self.build_create_table(table) for table in tables]
        for table in tables:
            statements.extend(
                self.build_foreign_key(table['name'], fk) for fk in table.get('foreign_keys', [])
            )
            statements.extend(
                self.build_index(table['name'], idx) for idx in table.get('indexes', [])
            )
        return statements

    async def _install(self, conn, schema: Dict[str, Any]) -> None:
        async with conn.transaction():
            for statement in self.schema_statements(schema):
                await conn.execute(statement)
            await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', schema['version'])
        self.current_version = schema['version']
        logger.info(f"Installed schema version {schema['version']}")

    async def _upgrade(self, conn, schemas: Dict[int, Dict[str, Any]], target: int) -> None:
        for version in range(self.current_version + 1, target + 1):
            schema = schemas.get(version)
            if schema is None:
                raise DatabaseSchemaError(f"Missing schema version {version}")

            async with conn.transaction():
                for migration in schema.get('migrations', []):
                    await conn.execute(migration)
                await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', version)

            self.current_version = version
            logger.info(f"Migrated schema to version {version}")

    async def verify(self, conn) -> None:
        """Check that the indexes the escrow ledger depends on exist.

        Raises:
            DatabaseSchemaError: If a required index is missing
        """
        rows = await conn.fetch(
            'SELECT indexname FROM pg_indexes WHERE indexname = ANY($1::TEXT[])',
            list(REQUIRED_INDEXES)
        )
        missing = set(REQUIRED_INDEXES) - {row['indexname'] for row in rows}
        if missing:
            raise DatabaseSchemaError(
                "Required indexes missing: " +
                ', '.join(f"{name} on {REQUIRED_INDEXES[name]}" for name in sorted(missing))
            )

    async def reset(self, conn) -> None:
        """Drop every table in the public schema, schema_version included."""
        rows = await conn.fetch(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
        )
        for row in rows:
            await conn.execute(f'DROP TABLE IF EXISTS "{row["table_name"]}" CASCADE')
        self.current_version = 0
        logger.info(f"Dropped {len(rows)} tables")

    def build_create_table(self, table: Dict[str, Any]) -> str:
        """CREATE TABLE statement for a table definition, without foreign keys."""
        parts = []
        constraints = []

        for col in table['columns']:
            part = f"{col['name']} {col['type']}"
            if 'default' in col:
                part += f" DEFAULT {col['default']}"
            if col.get('nullable') is False:
                part += " NOT NULL"
            parts.append(part)

            if col.get('primary_key'):
                constraints.append(f"PRIMARY KEY ({col['name']})")
            elif col.get('unique'):
                constraints.append(f"UNIQUE ({col['name']})")

        for check in table.get('checks', []):
            constraints.append(f"CONSTRAINT {check['name']} CHECK ({check['expression']})")

        return f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(parts + constraints)})"

    def build_foreign_key(self, table_name: str, fk: Dict[str, Any]) -> str:
        columns = ', '.join(fk['columns'])
        return (
            f"ALTER TABLE {table_name} "
            f"ADD CONSTRAINT fk_{table_name}_{fk['columns'][0]} "
            f"FOREIGN KEY ({columns}) REFERENCES {fk['references']}"
        )

    def build_index(self, table_name: str, idx: Dict[str, Any]) -> str:
        """CREATE INDEX statement; ``where`` makes it a partial index."""
        unique = 'UNIQUE ' if idx.get('unique') else ''
        where = f" WHERE {idx['where']}" if 'where' in idx else ''
        return (
            f"CREATE {unique}INDEX IF NOT EXISTS {idx['name']} "
            f"ON {table_name}({', '.join(idx['columns'])}){where}"
        )
