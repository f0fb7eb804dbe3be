"""
PostgreSQL database functions for the VPS lifecycle orchestrator
Direct database connections with raw SQL queries for transparency and performance
"""

import os
import asyncio
import logging
import time
import threading
from typing import Optional, Dict, List, Any

import psycopg2
import psycopg2.errors
import psycopg2.pool
from psycopg2.extras import Json, RealDictCursor

from services.errors import ConflictFailed, ValidationFailed

logger = logging.getLogger(__name__)

# Connection pool with recovery for dropped serverless endpoints
_connection_pool = None
_pool_lock = threading.Lock()
_pool_recreation_count = 0
_last_pool_recreation = 0

PROVISIONING_STATUSES = ('pending', 'provisioning', 'active', 'failed', 'suspended', 'terminated')
PROVISIONABLE_BILLING_STATUSES = ('paid', 'confirmed', 'active')
REQUEST_ACTIONS = ('start', 'stop', 'restart', 'format', 'changepassword', 'reinstall')
REQUEST_STATUSES = ('pending', 'approved', 'rejected', 'completed')

# Columns the orchestrator may write on an order; everything else belongs to billing
ORDER_MUTABLE_FIELDS = {
    'provisioning_status', 'ip_address', 'hostname', 'username', 'password', 'os',
    'hostycare_service_id', 'auto_provisioned', 'provisioning_error', 'server_details',
    'last_action', 'last_action_time', 'last_sync_time', 'expiry_date', 'status',
}
JSONB_FIELDS = {'server_details', 'provisioning_config', 'details', 'payload', 'order_snapshot',
                'entries', 'provider_result', 'context'}

DEAD_CONNECTION_INDICATORS = ('connection closed', 'server closed', 'ssl connection', 'timeout', 'terminating connection')


def _create_pool(minconn: int):
    database_url = os.getenv('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not found")
    return psycopg2.pool.ThreadedConnectionPool(
        minconn=minconn,
        maxconn=int(os.getenv('DB_POOL_MAX', '20')),
        dsn=database_url,
        cursor_factory=RealDictCursor,
        connect_timeout=5,
        keepalives_idle=600,
        keepalives_interval=30,
        keepalives_count=3,
        sslmode='prefer',
    )

def recreate_connection_pool() -> bool:
    """Recreate connection pool to recover from dead connections"""
    global _connection_pool, _pool_recreation_count, _last_pool_recreation

    current_time = time.time()
    # Don't recreate pool more than once every 10 seconds
    if current_time - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        try:
            if _connection_pool is not None:
                try:
                    _connection_pool.closeall()
                except psycopg2.Error as close_error:
                    logger.warning(f"⚠️ Error closing existing pool: {close_error}")

            _connection_pool = _create_pool(minconn=1)
            _pool_recreation_count += 1
            _last_pool_recreation = current_time
            logger.info(f"✅ DB: Connection pool recreated (#{_pool_recreation_count})")
            return True
        except (psycopg2.Error, ValueError) as e:
            logger.error(f"❌ DB: Failed to recreate connection pool: {e}")
            _connection_pool = None
            return False

def get_connection_pool():
    """Get or create the connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                _connection_pool = _create_pool(minconn=2)
                logger.info("✅ DB: Connection pool created")
    return _connection_pool

def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn

def return_connection(conn, is_broken: bool = False):
    """Return connection to pool, closing it if broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except (psycopg2.Error, ValueError) as e:
        logger.debug(f"Returning connection failed, closing directly: {e}")
        try:
            conn.close()
        except psycopg2.Error:
            pass

def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 DB: Connection pool closed")

def _adapt_params(params: Optional[tuple]) -> Optional[tuple]:
    if params is None:
        return None
    return tuple(Json(p) if isinstance(p, dict) else p for p in params)

async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a read-only SELECT and return rows, retrying dead connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, _adapt_params(params))
                    results = cursor.fetchall() if cursor.description else []
                    return [dict(row) for row in results]
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None
                error_msg = str(e).lower()
                if any(indicator in error_msg for indicator in DEAD_CONNECTION_INDICATORS):
                    logger.warning(f"🔄 DB: Detected dead connection, recreating pool: {e}")
                    recreate_connection_pool()
                if attempt < max_retries - 1:
                    logger.warning(f"DB: Connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                logger.error(f"💥 DB: All connection attempts failed after {max_retries} retries: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn)
        return []

    return await asyncio.to_thread(_execute)

async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, _adapt_params(params))
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 DB: Update connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)

async def execute_returning(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a write with RETURNING and return its rows (single attempt, like execute_update)"""

    def _execute() -> List[Dict]:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, _adapt_params(params))
                results = cursor.fetchall() if cursor.description else []
                return [dict(row) for row in results]
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 DB: Write connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)

async def run_in_transaction(func, *args, **kwargs):
    """Run func(conn, *args) inside one transaction; commit on success, roll back on any error"""

    def _execute_in_transaction():
        conn = get_connection()
        try:
            conn.autocommit = False
            try:
                result = func(conn, *args, **kwargs)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.autocommit = True
        finally:
            return_connection(conn)

    return await asyncio.to_thread(_execute_in_transaction)

async def probe_database_health() -> bool:
    """Lightweight SELECT 1 used by the health endpoint"""
    try:
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows and rows[0].get('ok') == 1)
    except (psycopg2.Error, ValueError) as e:
        logger.warning(f"⚠️ DB: Health probe failed: {e}")
        return False

async def init_database():
    """Initialize database tables if they don't exist"""
    def _init(conn):
        with conn.cursor() as cursor:
            # Orders are created by billing; provisioning columns belong to the orchestrator
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(64) NOT NULL,
                    product_name VARCHAR(255) NOT NULL,
                    product_type VARCHAR(50),
                    memory VARCHAR(50),
                    price DECIMAL(10,2) DEFAULT 0.00,
                    status VARCHAR(30) NOT NULL DEFAULT 'pending',
                    provider VARCHAR(30) NOT NULL DEFAULT 'hostycare',
                    provisioning_status VARCHAR(20) NOT NULL DEFAULT 'pending'
                        CHECK (provisioning_status IN ('pending', 'provisioning', 'active', 'failed', 'suspended', 'terminated')),
                    ip_address VARCHAR(64),
                    hostname VARCHAR(255),
                    username VARCHAR(100),
                    password TEXT,
                    os VARCHAR(100),
                    hostycare_service_id VARCHAR(64),
                    hostycare_product_id VARCHAR(64),
                    provisioning_config JSONB DEFAULT '{}'::jsonb,
                    auto_provisioned BOOLEAN DEFAULT FALSE,
                    provisioning_error TEXT,
                    server_details JSONB,
                    last_action VARCHAR(30),
                    last_action_time TIMESTAMP,
                    last_sync_time TIMESTAMP,
                    expiry_date TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_provisioning ON orders (status, provisioning_status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_ip ON orders (ip_address)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS order_logs (
                    id SERIAL PRIMARY KEY,
                    order_id INTEGER NOT NULL REFERENCES orders(id),
                    action VARCHAR(50) NOT NULL,
                    details JSONB,
                    success BOOLEAN NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_order_logs_order ON order_logs (order_id, created_at)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS server_action_requests (
                    id SERIAL PRIMARY KEY,
                    order_id INTEGER NOT NULL REFERENCES orders(id),
                    user_id VARCHAR(64) NOT NULL,
                    action VARCHAR(30) NOT NULL
                        CHECK (action IN ('start', 'stop', 'restart', 'format', 'changepassword', 'reinstall')),
                    status VARCHAR(20) NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'approved', 'rejected', 'completed')),
                    payload JSONB DEFAULT '{}'::jsonb,
                    order_snapshot JSONB DEFAULT '{}'::jsonb,
                    admin_notes TEXT,
                    processed_by VARCHAR(64),
                    processed_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            # At most one pending request per (order, action), enforced by storage
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uniq_pending_action_request
                ON server_action_requests (order_id, action)
                WHERE status = 'pending'
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_action_requests_status ON server_action_requests (status, created_at)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS action_logs (
                    id SERIAL PRIMARY KEY,
                    order_id INTEGER,
                    operation VARCHAR(50) NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    context JSONB,
                    entries JSONB NOT NULL,
                    provider_result JSONB,
                    error_message TEXT,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP,
                    duration_ms INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_action_logs_order ON action_logs (order_id, created_at)")

    await run_in_transaction(_init)
    logger.info("✅ DB: Tables initialized")

# ====================================================================
# ORDERS
# ====================================================================

async def get_order(order_id: int) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM orders WHERE id = %s", (order_id,))
    return rows[0] if rows else None

async def get_orders_by_ids(order_ids: List[int]) -> List[Dict]:
    if not order_ids:
        return []
    return await execute_query("SELECT * FROM orders WHERE id = ANY(%s) ORDER BY id", (list(order_ids),))

def _order_update_sql(order_id: int, fields: Dict[str, Any]):
    unknown = set(fields) - ORDER_MUTABLE_FIELDS
    if unknown:
        raise ValidationFailed(f"Order fields not writable by orchestrator: {sorted(unknown)}")
    columns = sorted(fields)
    assignments = ', '.join(f"{column} = %s" for column in columns)
    values = tuple(Json(fields[c]) if c in JSONB_FIELDS and fields[c] is not None else fields[c] for c in columns)
    query = f"UPDATE orders SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = %s RETURNING *"
    return query, values + (order_id,)

async def update_order_fields(order_id: int, fields: Dict[str, Any]) -> Optional[Dict]:
    """Update orchestrator-owned order columns; returns the updated row"""
    if not fields:
        return await get_order(order_id)
    query, params = _order_update_sql(order_id, fields)
    rows = await execute_returning(query, params)
    return rows[0] if rows else None

async def update_order_with_log(order_id: int, fields: Dict[str, Any], action: str,
                                details: Optional[Dict[str, Any]], success: bool) -> Optional[Dict]:
    """
    Update order fields and append one order log entry in a single transaction

    Used wherever a credential change must never be visible without its log entry.
    """
    query, params = _order_update_sql(order_id, fields) if fields else (None, None)

    def _apply(conn):
        row = None
        with conn.cursor() as cursor:
            if query:
                cursor.execute(query, params)
                row = cursor.fetchone()
            cursor.execute(
                "INSERT INTO order_logs (order_id, action, details, success) VALUES (%s, %s, %s, %s)",
                (order_id, action, Json(details or {}), success)
            )
            if row is None:
                cursor.execute("SELECT * FROM orders WHERE id = %s", (order_id,))
                row = cursor.fetchone()
        return dict(row) if row else None

    return await run_in_transaction(_apply)

async def append_order_log(order_id: int, action: str, details: Optional[Dict[str, Any]], success: bool) -> bool:
    count = await execute_update(
        "INSERT INTO order_logs (order_id, action, details, success) VALUES (%s, %s, %s, %s)",
        (order_id, action, details or {}, success)
    )
    return count > 0

async def get_order_logs(order_id: int, limit: int = 50) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM order_logs WHERE order_id = %s ORDER BY created_at DESC, id DESC LIMIT %s",
        (order_id, limit)
    )

async def claim_order_for_provisioning(order_id: int, force: bool = False) -> Optional[Dict]:
    """
    Atomically claim an order for provisioning using compare-and-swap

    Returns:
        Order row if claimed, None if not eligible or claimed by another worker
    """
    rows = await execute_returning(
        """UPDATE orders
           SET provisioning_status = 'provisioning', provisioning_error = NULL, updated_at = CURRENT_TIMESTAMP
           WHERE id = %s
             AND status IN ('paid', 'confirmed', 'active')
             AND provisioning_status <> 'provisioning'
             AND (provisioning_status IN ('pending', 'failed') OR %s)
           RETURNING *""",
        (order_id, force)
    )
    if rows:
        logger.info(f"🔒 DB: Claimed order {order_id} for provisioning")
        return rows[0]
    logger.info(f"⚠️ DB: Order {order_id} not claimable for provisioning")
    return None

async def get_provisionable_orders(limit: int = 100) -> List[Dict]:
    """Paid orders never auto-provisioned, or whose provisioning failed"""
    return await execute_query(
        """SELECT * FROM orders
           WHERE status IN ('paid', 'confirmed', 'active')
             AND (auto_provisioned IS NOT TRUE OR provisioning_status = 'failed')
             AND provisioning_status NOT IN ('provisioning', 'active', 'terminated')
           ORDER BY created_at ASC
           LIMIT %s""",
        (limit,)
    )

async def get_failed_orders(limit: int = 100) -> List[Dict]:
    return await execute_query(
        """SELECT * FROM orders
           WHERE status IN ('paid', 'confirmed', 'active') AND provisioning_status = 'failed'
           ORDER BY updated_at ASC
           LIMIT %s""",
        (limit,)
    )

async def get_orders_for_state_sync(limit: int = 25) -> List[Dict]:
    """Live servers, least recently synced first"""
    return await execute_query(
        """SELECT * FROM orders
           WHERE provisioning_status IN ('active', 'provisioning', 'suspended')
             AND (hostycare_service_id IS NOT NULL OR ip_address IS NOT NULL)
           ORDER BY last_sync_time ASC NULLS FIRST
           LIMIT %s""",
        (limit,)
    )

# ====================================================================
# SERVER ACTION REQUESTS
# ====================================================================

async def create_server_action_request(order_id: int, user_id: str, action: str,
                                       payload: Dict[str, Any], order_snapshot: Dict[str, Any]) -> Dict:
    """
    Insert a pending action request

    Raises:
        ConflictFailed: a pending request for (order_id, action) already exists
    """
    def _insert(conn):
        with conn.cursor() as cursor:
            cursor.execute(
                """INSERT INTO server_action_requests (order_id, user_id, action, status, payload, order_snapshot)
                   VALUES (%s, %s, %s, 'pending', %s, %s)
                   RETURNING *""",
                (order_id, user_id, action, Json(payload or {}), Json(order_snapshot or {}))
            )
            return dict(cursor.fetchone())

    try:
        return await run_in_transaction(_insert)
    except psycopg2.errors.UniqueViolation:
        logger.warning(f"⚠️ DB: Pending '{action}' request already exists for order {order_id}")
        raise ConflictFailed(f"A pending {action} request already exists for this order")

async def get_server_action_request(request_id: int) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM server_action_requests WHERE id = %s", (request_id,))
    return rows[0] if rows else None

async def get_pending_server_action_requests(limit: int = 100) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM server_action_requests WHERE status = 'pending' ORDER BY created_at ASC LIMIT %s",
        (limit,)
    )

async def get_server_action_requests_for_order(order_id: int, limit: int = 20) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM server_action_requests WHERE order_id = %s ORDER BY created_at DESC, id DESC LIMIT %s",
        (order_id, limit)
    )

async def transition_server_action_request(request_id: int, from_status: str, to_status: str,
                                           processed_by: Optional[str] = None,
                                           admin_notes: Optional[str] = None) -> Optional[Dict]:
    """
    Compare-and-set request status

    Returns:
        Updated row, or None if the request was not in from_status
    """
    rows = await execute_returning(
        """UPDATE server_action_requests
           SET status = %s,
               processed_by = COALESCE(%s, processed_by),
               processed_at = CASE WHEN status = 'pending' THEN CURRENT_TIMESTAMP ELSE processed_at END,
               admin_notes = COALESCE(%s, admin_notes),
               updated_at = CURRENT_TIMESTAMP
           WHERE id = %s AND status = %s
           RETURNING *""",
        (to_status, processed_by, admin_notes, request_id, from_status)
    )
    return rows[0] if rows else None

# ====================================================================
# ACTION LOGS
# ====================================================================

async def insert_action_log(entry: Dict[str, Any]) -> Optional[int]:
    """Write-once forensic log row"""
    rows = await execute_returning(
        """INSERT INTO action_logs (order_id, operation, status, context, entries, provider_result,
                                    error_message, started_at, completed_at, duration_ms)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
           RETURNING id""",
        (
            entry.get('order_id'),
            entry['operation'],
            entry['status'],
            Json(entry.get('context') or {}),
            Json(entry.get('entries') or []),
            Json(entry['provider_result']) if entry.get('provider_result') is not None else None,
            entry.get('error_message'),
            entry['started_at'],
            entry.get('completed_at'),
            entry.get('duration_ms'),
        )
    )
    return rows[0]['id'] if rows else None
