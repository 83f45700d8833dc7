import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from secureprint.config import settings


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_path: Path | None = None):
    path = db_path or settings.db_path
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


SCHEMA_SQL = """\
-- ============================================================
-- PRINT JOBS
-- ============================================================
CREATE TABLE IF NOT EXISTS jobs (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    document_name   TEXT NOT NULL,
    pages           INTEGER NOT NULL DEFAULT 1,
    copies          INTEGER NOT NULL DEFAULT 1,
    color           INTEGER NOT NULL DEFAULT 0,
    duplex          INTEGER NOT NULL DEFAULT 0,
    stapling        INTEGER NOT NULL DEFAULT 0,
    priority        TEXT NOT NULL DEFAULT 'normal',
    notes           TEXT,
    status          TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ('pending','released','completed','deleted')),
    cost            REAL NOT NULL,
    submitted_at    TEXT NOT NULL,
    released_at     TEXT,
    completed_at    TEXT,
    deleted_at      TEXT,
    secure_token    TEXT NOT NULL,
    release_link    TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    view_count      INTEGER NOT NULL DEFAULT 0,
    first_viewed_at TEXT,
    last_viewed_at  TEXT,
    printer_id      TEXT,
    released_by     TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id, submitted_at);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_expires ON jobs(expires_at);

-- ============================================================
-- DOCUMENTS (ciphertext, 1:1 with a live job)
-- ============================================================
CREATE TABLE IF NOT EXISTS documents (
    id                  TEXT PRIMARY KEY,
    job_id              TEXT NOT NULL UNIQUE REFERENCES jobs(id) ON DELETE CASCADE,
    content             BLOB NOT NULL,
    mime_type           TEXT,
    filename            TEXT NOT NULL,
    size                INTEGER NOT NULL,
    stored_path         TEXT UNIQUE,
    encryption_metadata TEXT,
    created_at          TEXT NOT NULL
);

-- ============================================================
-- DOCUMENT ANALYSIS (advisory)
-- ============================================================
CREATE TABLE IF NOT EXISTS document_analysis (
    id            TEXT PRIMARY KEY,
    document_id   TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    analysis_type TEXT NOT NULL,
    result        TEXT NOT NULL,
    status        TEXT NOT NULL,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_analysis_document ON document_analysis(document_id);

-- ============================================================
-- JOB VIEWS (append-only audit)
-- ============================================================
CREATE TABLE IF NOT EXISTS job_views (
    id         TEXT PRIMARY KEY,
    job_id     TEXT NOT NULL REFERENCES jobs(id),
    user_id    TEXT NOT NULL DEFAULT 'anonymous',
    viewed_at  TEXT NOT NULL,
    user_agent TEXT,
    ip_address TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_views_job ON job_views(job_id);
"""


MIGRATIONS = [
    # v0.2: last view timestamp
    "ALTER TABLE jobs ADD COLUMN last_viewed_at TEXT",
]


def init_db(db_path: Path | None = None):
    path = db_path or settings.db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(SCHEMA_SQL)
    # Run migrations idempotently (ALTER TABLE fails if the column exists)
    for migration in MIGRATIONS:
        try:
            conn.execute(migration)
            conn.commit()
        except sqlite3.OperationalError:
            pass  # already applied
    conn.close()
