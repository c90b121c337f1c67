"""Tests for schema definitions and DDL generation."""

import pytest

from database.lib.schema_manager import SchemaManager
from database import _get_connection_kwargs, _strip_query, DatabaseSchemaError

@pytest.fixture
def manager():
    return SchemaManager(pool=None)

def test_load_schema_files(manager):
    schemas = manager.load_schema_files()

    assert list(schemas) == [1, 2]
    latest = {table['name'] for table in schemas[2]['tables']}
    assert latest == {
        'card_instances',
        'escrow_transactions',
        'seller_trust_scores',
        'inventory_audit_log',
        'inventory_integrity_issues'
    }

def test_single_active_lock_index(manager):
    schemas = manager.load_schema_files()
    escrow = next(t for t in schemas[2]['tables'] if t['name'] == 'escrow_transactions')
    index = next(i for i in escrow['indexes'] if i['name'] == 'idx_escrow_one_active_lock')

    sql = manager.build_index('escrow_transactions', index)

    assert sql == (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_escrow_one_active_lock "
        "ON escrow_transactions(card_instance_id) WHERE status = 'locked'"
    )

def test_build_create_table(manager):
    sql = manager.build_create_table({
        'name': 'widgets',
        'columns': [
            {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
            {'name': 'label', 'type': 'TEXT', 'nullable': False, 'unique': True},
            {'name': 'state', 'type': 'TEXT', 'default': "'new'"}
        ],
        'checks': [{'name': 'chk_widgets_state', 'expression': "state IN ('new', 'old')"}]
    })

    assert sql.startswith('CREATE TABLE IF NOT EXISTS widgets (')
    assert 'id UUID DEFAULT gen_random_uuid()' in sql
    assert 'label TEXT NOT NULL' in sql
    assert "state TEXT DEFAULT 'new'" in sql
    assert 'PRIMARY KEY (id)' in sql
    assert 'UNIQUE (label)' in sql
    assert "CONSTRAINT chk_widgets_state CHECK (state IN ('new', 'old'))" in sql

def test_build_plain_index(manager):
    sql = manager.build_index('card_instances', {'name': 'idx_x', 'columns': ['a', 'b']})
    assert sql == 'CREATE INDEX IF NOT EXISTS idx_x ON card_instances(a, b)'

def test_escrow_status_check(manager):
    schemas = manager.load_schema_files()
    escrow = next(t for t in schemas[2]['tables'] if t['name'] == 'escrow_transactions')

    sql = manager.build_create_table(escrow)

    assert "status IN ('locked', 'released', 'unlocked', 'completed')" in sql

def test_connection_kwargs():
    kwargs = _get_connection_kwargs('postgresql://root@localhost:26257/cardvault?sslmode=disable')
    assert kwargs['ssl'] is False
    assert kwargs['server_settings']['statement_timeout'] == '60000'

    secure = _get_connection_kwargs('postgresql://user@db.example.com/cardvault')
    assert secure['ssl'] is not False

    assert _strip_query('postgresql://a@b/c?sslmode=disable') == 'postgresql://a@b/c'

def test_schema_statements_create_tables_first(manager):
    schema = manager.load_schema_files()[2]

    statements = manager.schema_statements(schema)

    creates = [i for i, sql in enumerate(statements) if sql.startswith('CREATE TABLE')]
    assert creates == list(range(len(schema['tables'])))
    assert any('REFERENCES card_instances(id)' in sql for sql in statements)

@pytest.mark.asyncio
async def test_fresh_install(pool, conn):
    conn.fetchval.return_value = 0
    conn.fetch.return_value = [{'indexname': 'idx_escrow_one_active_lock'}]
    manager = SchemaManager(pool)

    await manager.initialize()

    assert manager.current_version == 2
    assert conn.commits == 1
    version_insert = conn.execute.call_args_list[-1]
    assert version_insert.args == ('INSERT INTO schema_version (version) VALUES ($1)', 2)

@pytest.mark.asyncio
async def test_upgrade_runs_pending_migrations(pool, conn):
    conn.fetchval.return_value = 1
    conn.fetch.return_value = [{'indexname': 'idx_escrow_one_active_lock'}]
    manager = SchemaManager(pool)

    await manager.initialize()

    assert manager.current_version == 2
    statements = conn.executed_sql()
    assert any('CREATE TABLE IF NOT EXISTS inventory_audit_log' in sql for sql in statements)
    assert not any('CREATE TABLE IF NOT EXISTS card_instances' in sql for sql in statements)

@pytest.mark.asyncio
async def test_up_to_date_schema_is_left_alone(pool, conn):
    conn.fetchval.return_value = 2
    conn.fetch.return_value = [{'indexname': 'idx_escrow_one_active_lock'}]

    await SchemaManager(pool).initialize()

    # Only the version table check ran
    assert len(conn.executed_sql()) == 1

@pytest.mark.asyncio
async def test_missing_lock_index_fails_startup(pool, conn):
    conn.fetchval.return_value = 2
    conn.fetch.return_value = []

    with pytest.raises(DatabaseSchemaError, match='idx_escrow_one_active_lock'):
        await SchemaManager(pool).initialize()
