SCHEMA_VERSION = 2

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Player profiles, keyed by lower-cased wallet address
CREATE TABLE IF NOT EXISTS profiles (
    wallet_address TEXT PRIMARY KEY,
    username       TEXT NOT NULL DEFAULT '',
    best_score     INTEGER NOT NULL DEFAULT 0 CHECK (best_score >= 0),
    chain          TEXT NOT NULL DEFAULT '',
    created_at     REAL NOT NULL,
    updated_at     REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_profiles_best_score ON profiles(best_score DESC);
CREATE UNIQUE INDEX IF NOT EXISTS idx_profiles_username
    ON profiles(username COLLATE NOCASE) WHERE username != '';
"""
