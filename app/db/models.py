"""
SQL schema. People, viewer snapshots, broadcasts and their AI summaries.
"""

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

-- ─────────────────────────────────────────────────────────────
-- persons: every username seen on the platform
-- ─────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS persons (
    id              TEXT PRIMARY KEY,
    username        TEXT UNIQUE NOT NULL,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);

-- ─────────────────────────────────────────────────────────────
-- profiles: per-person settings (friend tier: 1 = closest)
-- ─────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS profiles (
    id              TEXT PRIMARY KEY,
    person_id       TEXT NOT NULL UNIQUE REFERENCES persons(id) ON DELETE CASCADE,
    friend_tier     INTEGER,
    notes           TEXT,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    updated_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_profiles_friend_tier ON profiles(friend_tier);

-- ─────────────────────────────────────────────────────────────
-- affiliate_api_snapshots: polled room stats (concurrent viewers)
-- ─────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS affiliate_api_snapshots (
    id              TEXT PRIMARY KEY,
    person_id       TEXT NOT NULL REFERENCES persons(id) ON DELETE CASCADE,
    num_users       INTEGER NOT NULL DEFAULT 0,
    recorded_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_person_time
    ON affiliate_api_snapshots(person_id, recorded_at);

-- ─────────────────────────────────────────────────────────────
-- my_broadcasts: own broadcast sessions (manual or auto-detected)
-- ─────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS my_broadcasts (
    id                  TEXT PRIMARY KEY,
    started_at          TEXT NOT NULL,
    ended_at            TEXT,
    duration_minutes    INTEGER,           -- set on end, or manually
    peak_viewers        INTEGER NOT NULL DEFAULT 0,
    total_tokens        INTEGER NOT NULL DEFAULT 0,
    followers_gained    INTEGER NOT NULL DEFAULT 0,
    notes               TEXT,
    tags_json           TEXT NOT NULL DEFAULT '[]',
    room_subject        TEXT,
    auto_detected       INTEGER NOT NULL DEFAULT 0,
    source              TEXT NOT NULL DEFAULT 'manual',
    -- manual | events_api | affiliate_api
    created_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    updated_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_my_broadcasts_started ON my_broadcasts(started_at);

-- ─────────────────────────────────────────────────────────────
-- stream_sessions: sessions detected from the events feed
-- ─────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS stream_sessions (
    id              TEXT PRIMARY KEY,
    broadcaster     TEXT NOT NULL,
    started_at      TEXT NOT NULL,
    ended_at        TEXT,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_stream_sessions_broadcaster ON stream_sessions(broadcaster);

-- ─────────────────────────────────────────────────────────────
-- broadcast_summaries: one AI summary per broadcast
-- No FK: broadcast_id may point at my_broadcasts or stream_sessions.
-- List columns hold JSON text; readers deserialize.
-- ─────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS broadcast_summaries (
    id                      TEXT PRIMARY KEY,
    broadcast_id            TEXT NOT NULL UNIQUE,
    theme                   TEXT,
    tokens_received         INTEGER NOT NULL DEFAULT 0,
    tokens_per_hour         REAL,
    max_viewers             INTEGER,
    unique_viewers          INTEGER,
    avg_watch_time_seconds  REAL,
    new_followers           INTEGER NOT NULL DEFAULT 0,
    lost_followers          INTEGER NOT NULL DEFAULT 0,
    net_followers           INTEGER NOT NULL DEFAULT 0,
    room_subject_variants   TEXT NOT NULL DEFAULT '[]',
    visitors_stayed         TEXT NOT NULL DEFAULT '[]',
    visitors_quick          TEXT NOT NULL DEFAULT '[]',
    visitors_banned         TEXT NOT NULL DEFAULT '[]',
    top_tippers             TEXT NOT NULL DEFAULT '[]',   -- [{username, tokens}]
    top_lovers_board        TEXT NOT NULL DEFAULT '[]',   -- [{rank, username, tokens}]
    overall_vibe            TEXT,
    engagement_summary      TEXT,
    tracking_notes          TEXT,
    private_dynamics        TEXT,
    opportunities           TEXT,
    chat_highlights         TEXT,
    themes_moments          TEXT,
    overall_summary         TEXT,
    full_markdown           TEXT,
    transcript_text         TEXT,                         -- kept for regeneration
    generated_at            TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    ai_model                TEXT,
    generation_tokens_used  INTEGER,
    created_at              TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    updated_at              TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_broadcast_summaries_generated ON broadcast_summaries(generated_at);
CREATE INDEX IF NOT EXISTS idx_broadcast_summaries_theme     ON broadcast_summaries(theme);
"""
