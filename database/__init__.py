"""Connection pool and schema bootstrap for the inventory store.

The store is PostgreSQL or CockroachDB. Every manager in the service shares
the pool created by ``init_db``; lock exclusivity and sale atomicity are
delegated to the database's unique indexes and transactions.
"""

import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff

from .exceptions import DatabaseError, DatabaseConnectionError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

POOL_MIN_SIZE = 2
POOL_MAX_SIZE = 20
STATEMENT_TIMEOUT_MS = '60000'

# Errors worth retrying while the database is still starting up
TRANSIENT_CONNECT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    OSError
)

_pool: Optional[asyncpg.Pool] = None

def _ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Translate the URL query string into asyncpg connect arguments.

    ``sslmode=disable`` turns TLS off; anything else (or no sslmode at all)
    requires a verified TLS connection. Other query parameters are passed
    through unchanged.
    """
    query = parse_qs(urlparse(db_url).query)
    sslmode = query.pop('sslmode', ['require'])[0]
    query.pop('ssl', None)

    kwargs: Dict[str, Any] = {key: values[0] for key, values in query.items()}
    kwargs['ssl'] = False if sslmode == 'disable' else _ssl_context()
    kwargs['server_settings'] = {'statement_timeout': STATEMENT_TIMEOUT_MS}
    return kwargs

def _strip_query(db_url: str) -> str:
    return db_url.split('?', 1)[0]

def _with_database(db_url: str, name: str) -> str:
    return _strip_query(db_url).rsplit('/', 1)[0] + '/' + name

@backoff.on_exception(backoff.expo, TRANSIENT_CONNECT_ERRORS, max_tries=5)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database named in ``db_url`` when the server lacks it.

    Raises:
        DatabaseConnectionError: If the CREATE DATABASE statement fails
    """
    db_name = urlparse(db_url).path.strip('/')
    if not db_name:
        return

    conn_kwargs = _get_connection_kwargs(db_url)
    try:
        conn = await asyncpg.connect(_with_database(db_url, 'postgres'), **conn_kwargs)
    except asyncpg.exceptions.InvalidCatalogNameError:
        # CockroachDB ships defaultdb instead of postgres
        conn = await asyncpg.connect(_with_database(db_url, 'defaultdb'), **conn_kwargs)

    try:
        if await conn.fetchval('SELECT 1 FROM pg_database WHERE datname = $1', db_name):
            return
        await conn.execute(f'CREATE DATABASE "{db_name}"')
        logger.info(f"Created database {db_name}")
    except asyncpg.exceptions.PostgresError as e:
        logger.error(f"Could not create database {db_name}: {e}")
        raise DatabaseConnectionError(f"Failed to create database {db_name}: {e}")
    finally:
        await conn.close()

@backoff.on_exception(backoff.expo, TRANSIENT_CONNECT_ERRORS, max_tries=5)
async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> None:
    """Create the shared pool and bring the schema up to date.

    Args:
        db_url: Database URL; defaults to ``db_url`` from settings.conf
        force_recreate: Drop every table first (test databases only)

    Raises:
        ValueError: If no database URL is configured
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool

    # Deferred so importing database does not load settings.conf
    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    await create_database_if_not_exists(url)

    pool = await asyncpg.create_pool(
        _strip_query(url),
        min_size=POOL_MIN_SIZE,
        max_size=POOL_MAX_SIZE,
        max_inactive_connection_lifetime=300.0,
        command_timeout=60.0,
        **_get_connection_kwargs(url)
    )

    try:
        schema = SchemaManager(pool)
        if force_recreate:
            logger.warning("Recreating database schema from scratch")
            async with pool.acquire() as conn:
                await schema.reset(conn)
        await schema.initialize()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        await pool.close()
        raise

    _pool = pool
    logger.info(f"Database ready at schema version {schema.current_version}")

async def get_pool() -> asyncpg.Pool:
    """Return the shared pool, initializing it on first use.

    Raises:
        DatabaseConnectionError: If the pool could not be created
    """
    if _pool is None:
        await init_db()
    if _pool is None:
        raise DatabaseConnectionError("Failed to initialize database pool")
    return _pool

async def close() -> None:
    """Close the shared pool if one is open."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None

__all__ = [
    'init_db',
    'get_pool',
    'close',
    'DatabaseError',
    'DatabaseConnectionError',
    'DatabaseSchemaError'
]
