"""Table definitions for both storage backends.

Timestamps are TEXT (ISO-8601, UTC, microsecond precision) on sqlite and
TIMESTAMPTZ on postgres; the backend adapters convert both ways. Clock times on
availability blocks are stored as 'HH:MM[:SS]' text on both.
"""

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS admins (
    id INTEGER PRIMARY KEY,
    timezone TEXT NOT NULL DEFAULT 'UTC'
);

CREATE TABLE IF NOT EXISTS availability_blocks (
    id TEXT PRIMARY KEY,
    admin_id INTEGER NOT NULL REFERENCES admins(id) ON DELETE CASCADE,
    day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    timezone TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (start_time < end_time)
);

CREATE TABLE IF NOT EXISTS calendar_integrations (
    id TEXT PRIMARY KEY,
    admin_id INTEGER NOT NULL REFERENCES admins(id) ON DELETE CASCADE,
    provider TEXT NOT NULL DEFAULT 'google-calendar',
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_expires_at TEXT,
    calendar_id TEXT NOT NULL DEFAULT 'primary',
    sync_token TEXT,
    last_sync_at TEXT,
    status TEXT NOT NULL DEFAULT 'disconnected',
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (admin_id, provider)
);

CREATE TABLE IF NOT EXISTS busy_intervals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    integration_id TEXT NOT NULL REFERENCES calendar_integrations(id) ON DELETE CASCADE,
    external_event_id TEXT NOT NULL,
    start_utc TEXT NOT NULL,
    end_utc TEXT NOT NULL,
    title TEXT,
    is_busy INTEGER NOT NULL DEFAULT 1,
    synced_at TEXT NOT NULL,
    UNIQUE (integration_id, external_event_id),
    CHECK (start_utc < end_utc)
);

CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    admin_id INTEGER NOT NULL REFERENCES admins(id) ON DELETE CASCADE,
    start_utc TEXT NOT NULL,
    end_utc TEXT NOT NULL,
    title TEXT,
    requester_name TEXT NOT NULL,
    requester_email TEXT NOT NULL,
    notes TEXT,
    video_provider TEXT,
    video_link TEXT,
    external_event_id TEXT,
    timezone TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    rejection_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (start_utc < end_utc)
);

CREATE INDEX IF NOT EXISTS idx_blocks_admin_active ON availability_blocks(admin_id, is_active);
CREATE INDEX IF NOT EXISTS idx_integrations_status ON calendar_integrations(status);
CREATE INDEX IF NOT EXISTS idx_busy_integration_start ON busy_intervals(integration_id, start_utc);
CREATE INDEX IF NOT EXISTS idx_bookings_admin_start ON bookings(admin_id, start_utc);
CREATE INDEX IF NOT EXISTS idx_bookings_admin_status ON bookings(admin_id, status);
"""

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS admins (
    id INTEGER PRIMARY KEY,
    timezone TEXT NOT NULL DEFAULT 'UTC'
);

CREATE TABLE IF NOT EXISTS availability_blocks (
    id TEXT PRIMARY KEY,
    admin_id INTEGER NOT NULL REFERENCES admins(id) ON DELETE CASCADE,
    day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    timezone TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CHECK (start_time < end_time)
);

CREATE TABLE IF NOT EXISTS calendar_integrations (
    id TEXT PRIMARY KEY,
    admin_id INTEGER NOT NULL REFERENCES admins(id) ON DELETE CASCADE,
    provider TEXT NOT NULL DEFAULT 'google-calendar',
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_expires_at TIMESTAMPTZ,
    calendar_id TEXT NOT NULL DEFAULT 'primary',
    sync_token TEXT,
    last_sync_at TIMESTAMPTZ,
    status TEXT NOT NULL DEFAULT 'disconnected',
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (admin_id, provider)
);

CREATE TABLE IF NOT EXISTS busy_intervals (
    id BIGSERIAL PRIMARY KEY,
    integration_id TEXT NOT NULL REFERENCES calendar_integrations(id) ON DELETE CASCADE,
    external_event_id TEXT NOT NULL,
    start_utc TIMESTAMPTZ NOT NULL,
    end_utc TIMESTAMPTZ NOT NULL,
    title TEXT,
    is_busy BOOLEAN NOT NULL DEFAULT TRUE,
    synced_at TIMESTAMPTZ NOT NULL,
    UNIQUE (integration_id, external_event_id),
    CHECK (start_utc < end_utc)
);

CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    admin_id INTEGER NOT NULL REFERENCES admins(id) ON DELETE CASCADE,
    start_utc TIMESTAMPTZ NOT NULL,
    end_utc TIMESTAMPTZ NOT NULL,
    title TEXT,
    requester_name TEXT NOT NULL,
    requester_email TEXT NOT NULL,
    notes TEXT,
    video_provider TEXT,
    video_link TEXT,
    external_event_id TEXT,
    timezone TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    rejection_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CHECK (start_utc < end_utc)
);

CREATE INDEX IF NOT EXISTS idx_blocks_admin_active ON availability_blocks(admin_id, is_active);
CREATE INDEX IF NOT EXISTS idx_integrations_status ON calendar_integrations(status);
CREATE INDEX IF NOT EXISTS idx_busy_integration_start ON busy_intervals(integration_id, start_utc);
CREATE INDEX IF NOT EXISTS idx_bookings_admin_start ON bookings(admin_id, start_utc);
CREATE INDEX IF NOT EXISTS idx_bookings_admin_status ON bookings(admin_id, status);
"""
