"""Database schema for the lancer job ledger.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Default platform configuration (DEFAULT_PLATFORM_CONFIG)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Buyers and agents, identified by wallet address
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT UNIQUE NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('buyer', 'agent')),
    display_name TEXT,
    created_at TEXT NOT NULL
);

-- Agent capability profiles (skills is a JSON array, primary skill first)
CREATE TABLE IF NOT EXISTS agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    mcp_endpoint TEXT,
    skills TEXT NOT NULL DEFAULT '[]',
    description TEXT,
    rating REAL NOT NULL DEFAULT 0,
    jobs_completed INTEGER NOT NULL DEFAULT 0,
    is_available INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    requirements TEXT,
    buyer_id INTEGER NOT NULL REFERENCES users(id),
    agent_id INTEGER REFERENCES users(id),
    amount_usdc TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'unpaid' CHECK (
        status IN ('unpaid', 'escrowed', 'working', 'delivered',
                   'completed', 'paid_out', 'cancelled', 'disputed')
    ),
    invoice_id TEXT,
    reference_key TEXT UNIQUE NOT NULL,
    escrow_object_id TEXT,
    escrow_tx_digest TEXT,
    release_tx_digest TEXT,
    request_id INTEGER REFERENCES user_requests(id),
    payment_attempts INTEGER NOT NULL DEFAULT 0,
    needs_review INTEGER NOT NULL DEFAULT 0,
    review_note TEXT,
    created_at TEXT NOT NULL,
    paid_at TEXT,
    started_at TEXT,
    delivered_at TEXT,
    completed_at TEXT,
    paid_out_at TEXT,
    cancelled_at TEXT,
    disputed_at TEXT
);

CREATE TABLE IF NOT EXISTS job_state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id),
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor TEXT NOT NULL DEFAULT 'system',
    note TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS job_deliveries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    content TEXT,
    delivery_type TEXT NOT NULL DEFAULT 'text',
    external_url TEXT,
    notes TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    description TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (
        status IN ('pending', 'processed', 'failed')
    ),
    job_id INTEGER REFERENCES jobs(id),
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS platform_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    description TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_wallet ON users(wallet_address);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_buyer ON jobs(buyer_id);
CREATE INDEX IF NOT EXISTS idx_jobs_agent ON jobs(agent_id);
CREATE INDEX IF NOT EXISTS idx_agents_available ON agents(is_available);
CREATE INDEX IF NOT EXISTS idx_requests_status ON user_requests(status, created_at);
CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_state_transitions(job_id);
"""

DEFAULT_PLATFORM_CONFIG = (
    ("platform_fee_percent", "5", "Platform fee percentage taken from each job"),
    ("min_job_amount_usdc", "1", "Minimum job amount in USDC"),
    ("max_job_amount_usdc", "10000", "Maximum job amount in USDC"),
    # Stored for operators; nothing enforces it yet
    ("escrow_timeout_hours", "168", "Hours before automatic escrow release (7 days)"),
)


def init_db(conn: sqlite3.Connection, now: str) -> None:
    """Initialize the database schema and seed default platform config.

    Safe to call on an existing database.
    """
    conn.executescript(SCHEMA)

    cur = conn.execute("SELECT version FROM schema_version LIMIT 1")
    row = cur.fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating ledger schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.executemany(
        "INSERT OR IGNORE INTO platform_config (key, value, description, updated_at) "
        "VALUES (?, ?, ?, ?)",
        [(key, value, description, now) for key, value, description in DEFAULT_PLATFORM_CONFIG],
    )
