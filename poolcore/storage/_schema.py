SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Participants: one per chain address (externally "users")
CREATE TABLE IF NOT EXISTS participants (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    address         TEXT NOT NULL UNIQUE,
    username        TEXT NOT NULL DEFAULT '',
    payout_address  TEXT,
    pending_balance INTEGER NOT NULL DEFAULT 0,
    paid_balance    INTEGER NOT NULL DEFAULT 0,
    payout_enabled  INTEGER NOT NULL DEFAULT 1,
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL
);

-- Workers: named rigs belonging to a participant
CREATE TABLE IF NOT EXISTS workers (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id  INTEGER NOT NULL,
    name            TEXT NOT NULL,
    shares_valid    INTEGER NOT NULL DEFAULT 0,
    shares_invalid  INTEGER NOT NULL DEFAULT 0,
    last_seen       REAL,
    last_share      REAL,
    is_online       INTEGER NOT NULL DEFAULT 0,
    created_at      REAL NOT NULL,
    UNIQUE (participant_id, name),
    FOREIGN KEY (participant_id) REFERENCES participants(id)
);

-- Shares: append-only submission log
CREATE TABLE IF NOT EXISTS shares (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id   INTEGER NOT NULL,
    worker_id        INTEGER NOT NULL,
    difficulty       INTEGER NOT NULL,
    share_difficulty INTEGER NOT NULL,
    is_valid         INTEGER NOT NULL,
    submitted_at     REAL NOT NULL,
    share_hash       TEXT,
    FOREIGN KEY (participant_id) REFERENCES participants(id),
    FOREIGN KEY (worker_id) REFERENCES workers(id)
);

-- Blocks: pool-found blocks and their confirmation state
CREATE TABLE IF NOT EXISTS blocks (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    height                  INTEGER NOT NULL UNIQUE,
    block_hash              TEXT NOT NULL,
    reward                  INTEGER NOT NULL,
    difficulty              INTEGER NOT NULL DEFAULT 1,
    found_by_participant_id INTEGER,
    found_by_worker_id      INTEGER,
    status                  TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'confirmed', 'orphaned')),
    confirmations           INTEGER NOT NULL DEFAULT 0,
    found_at                REAL NOT NULL,
    updated_at              REAL NOT NULL,
    FOREIGN KEY (found_by_participant_id) REFERENCES participants(id),
    FOREIGN KEY (found_by_worker_id) REFERENCES workers(id)
);

-- Block rewards: one row per (block, participant), written once per block
CREATE TABLE IF NOT EXISTS block_rewards (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    block_id       INTEGER NOT NULL,
    participant_id INTEGER NOT NULL,
    share_percent  REAL NOT NULL,
    amount         INTEGER NOT NULL,
    created_at     REAL NOT NULL,
    UNIQUE (block_id, participant_id),
    FOREIGN KEY (block_id) REFERENCES blocks(id),
    FOREIGN KEY (participant_id) REFERENCES participants(id)
);

-- Payouts: disbursement attempts
CREATE TABLE IF NOT EXISTS payouts (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    participant_id INTEGER NOT NULL,
    amount         INTEGER NOT NULL,
    address        TEXT NOT NULL,
    status         TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'sent', 'confirmed', 'failed')),
    txid           TEXT,
    created_at     REAL NOT NULL,
    processed_at   REAL,
    FOREIGN KEY (participant_id) REFERENCES participants(id)
);

-- Log tailer checkpoints: byte offset per tailed file
CREATE TABLE IF NOT EXISTS log_checkpoints (
    path       TEXT PRIMARY KEY,
    byte_offset INTEGER NOT NULL,
    updated_at REAL NOT NULL
);

-- Advisory locks: one live owner per scheduled activity
CREATE TABLE IF NOT EXISTS activity_locks (
    name       TEXT PRIMARY KEY,
    owner      TEXT NOT NULL,
    expires_at REAL NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_workers_participant ON workers(participant_id);
CREATE INDEX IF NOT EXISTS idx_workers_online ON workers(is_online);
CREATE INDEX IF NOT EXISTS idx_shares_window ON shares(is_valid, submitted_at);
CREATE INDEX IF NOT EXISTS idx_shares_participant ON shares(participant_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_shares_hash ON shares(share_hash) WHERE share_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_blocks_status ON blocks(status);
CREATE INDEX IF NOT EXISTS idx_block_rewards_block ON block_rewards(block_id);
CREATE INDEX IF NOT EXISTS idx_block_rewards_participant ON block_rewards(participant_id);
CREATE INDEX IF NOT EXISTS idx_payouts_status ON payouts(status);
CREATE INDEX IF NOT EXISTS idx_payouts_participant ON payouts(participant_id);
CREATE INDEX IF NOT EXISTS idx_participants_payable ON participants(payout_enabled, pending_balance);
"""
