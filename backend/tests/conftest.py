import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from secureprint.config import settings
from secureprint.database import get_db, init_db
from secureprint.dependencies import get_lifecycle
from secureprint.main import app
from secureprint.services.blob_store import BlobStore
from secureprint.services.expiry_index import ExpiryIndex
from secureprint.services.lifecycle import LifecycleManager, PrintOptions, Upload

PDF_BYTES = b"%PDF-1.7\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def tmp_data(tmp_path):
    data_path = tmp_path / "SecurePrint"
    (data_path / "uploads").mkdir(parents=True)
    return data_path


@pytest.fixture
def uploads_dir(tmp_data):
    return tmp_data / "uploads"


@pytest.fixture
def session_factory(tmp_data):
    db_path = tmp_data / "secureprint.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    init_db(db_path)
    TestSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield TestSession
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blob_store(uploads_dir):
    return BlobStore(uploads_dir)


@pytest.fixture
def lifecycle(blob_store, clock):
    return LifecycleManager(blob_store=blob_store, index=ExpiryIndex(), clock=clock)


@pytest.fixture
def make_job(lifecycle, db):
    """Submit a job straight through the lifecycle manager."""

    def _make_job(content=PDF_BYTES, minutes=15, user_id="alice", **options):
        job, link = lifecycle.submit(
            db,
            user_id=user_id,
            document_name=options.pop("document_name", "report.pdf"),
            upload=Upload(filename="report.pdf", mime_type="application/pdf", content=content),
            public_base="https://print.example",
            options=PrintOptions(**options),
            expiration_minutes=minutes,
        )
        return job.id, job.secure_token, link

    return _make_job


@pytest.fixture
def client(tmp_data, session_factory, lifecycle):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    original_data_path = settings.data_path
    settings.data_path = tmp_data
    c = TestClient(app)
    yield c
    settings.data_path = original_data_path
    app.dependency_overrides.clear()
