"""
Shared test fixtures for the signflow test suite.

By default runs against a file-backed aiosqlite database, one connection per
session. SQLite has a single writer, and every transaction here opens with
``BEGIN IMMEDIATE``, so concurrent writers queue one behind another: the
concurrency tests then check ordering, replay and rejection logic but cannot
observe a lost update. Point ``SIGNFLOW_TEST_DATABASE_URL`` at a PostgreSQL
database (``postgresql+asyncpg://...``) to run the same suite with row-level
locking and genuinely interleaved transactions.

Provides an in-memory document store, a recording notification dispatcher and
helpers for building signing requests.
"""

import os
import tempfile
import uuid
from datetime import timedelta

import factory
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# ---- Environment overrides MUST come before any signflow imports ----
if not os.environ.get("SIGNFLOW_TEST_DATABASE_URL"):
    _TEST_DIR = tempfile.mkdtemp(prefix="signflow-tests-")
    os.environ["SIGNFLOW_TEST_DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/signflow.db"
os.environ["DATABASE_URL"] = os.environ["SIGNFLOW_TEST_DATABASE_URL"]
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("AUDIT_WEBHOOK_URL", None)
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

from signflow.common.base_models import utcnow  # noqa: E402
from signflow.config import settings  # noqa: E402
from signflow.database import Base, session_scope  # noqa: E402
from signflow.signing import orchestrator  # noqa: E402
from signflow.signing.documents import DocumentStore  # noqa: E402
from signflow.signing.notifications import DeliveryResult, NotificationDispatcher  # noqa: E402
from signflow.signing.schemas import SignatureInput, SigningRequestCreate  # noqa: E402

# ---------------------------------------------------------------------------
# Async engine & session factory for the test database
# ---------------------------------------------------------------------------
TEST_DATABASE_URL = os.environ["DATABASE_URL"]
IS_SQLITE = TEST_DATABASE_URL.startswith("sqlite")

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=NullPool,
    connect_args={"timeout": 30} if IS_SQLITE else {},
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


def _configure_sqlite(dbapi_conn, _connection_record):
    # Take over transaction control from the driver so BEGIN IMMEDIATE can be used.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_immediate(conn):
    # Writers queue on the busy timeout instead of failing on lock upgrade.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


if IS_SQLITE:
    event.listen(test_engine.sync_engine, "connect", _configure_sqlite)
    event.listen(test_engine.sync_engine, "begin", _begin_immediate)


# ---------------------------------------------------------------------------
# Database lifecycle
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create all tables before each test, drop them afterward."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory() -> async_sessionmaker:
    return TestSession


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """A session for direct assertions. Commit or close it before other sessions write."""
    async with TestSession() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------
class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.puts: list[str] = []

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.objects[key] = data
        self.puts.append(key)
        return key

    async def get(self, ref: str) -> bytes:
        if ref not in self.objects:
            raise KeyError(f"No object stored at {ref}")
        return self.objects[ref]


class RecordingDispatcher(NotificationDispatcher):
    """Records every delivered event; fails the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0
        self.events = []

    async def notify(self, event) -> DeliveryResult:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConnectionError("relay unavailable")
        self.events.append(event)
        return DeliveryResult(delivered=True, detail="recorded")


SOURCE_DOCUMENT_REF = "documents/master-services-agreement.pdf"


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    store.objects[SOURCE_DOCUMENT_REF] = b"%PDF-1.7 master services agreement"
    return store


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def failing_dispatcher():
    """Build a dispatcher that fails its first ``fail_times`` deliveries."""
    return RecordingDispatcher


# ---------------------------------------------------------------------------
# Factory Boy factories
# ---------------------------------------------------------------------------
class SignerFactory(factory.Factory):
    class Meta:
        model = dict

    email = factory.LazyFunction(lambda: f"signer-{uuid.uuid4().hex[:8]}@signflow-test.com")
    name = factory.Faker("name")


class SigningRequestFactory(factory.Factory):
    class Meta:
        model = dict

    title = factory.Faker("sentence", nb_words=4)
    document_ref = SOURCE_DOCUMENT_REF
    signing_mode = "parallel"
    message = "Please review and sign."
    expires_at = factory.LazyFunction(lambda: utcnow() + timedelta(days=30))
    signers = factory.LazyFunction(lambda: [SignerFactory() for _ in range(2)])
    send = True


class SignatureFactory(factory.Factory):
    class Meta:
        model = dict

    signature_type = "typed"
    signature_data = factory.Faker("name")
    ip_address = "203.0.113.10"
    user_agent = "Mozilla/5.0 (signflow-test)"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
@pytest.fixture
def make_request(session_factory):
    """Create (and by default send) a signing request in its own transaction."""

    async def _make(signer_count: int = 2, initiator_id=None, **overrides):
        if "signers" not in overrides:
            overrides["signers"] = [SignerFactory() for _ in range(signer_count)]
        data = SigningRequestCreate(**SigningRequestFactory(**overrides))
        async with session_scope(session_factory) as db:
            return await orchestrator.create_request(db, initiator_id or uuid.uuid4(), data)

    return _make


@pytest.fixture
def sign(session_factory, document_store):
    """Sign as ``signer_id`` in its own transaction."""

    async def _sign(request_id, signer_id, idempotency_key=None, **signature):
        async with session_scope(session_factory) as db:
            return await orchestrator.sign_document(
                db,
                request_id,
                signer_id,
                SignatureInput(**SignatureFactory(**signature)),
                idempotency_key or f"sign-{signer_id}",
                document_store=document_store,
            )

    return _sign


@pytest.fixture
def fetch(session_factory):
    """Read a request's committed state."""

    async def _fetch(request_id):
        async with session_factory() as db:
            return await orchestrator.get_request(db, request_id)

    return _fetch


@pytest.fixture(autouse=True)
def _reset_settings():
    original = settings.model_copy()
    yield
    for field in type(settings).model_fields:
        setattr(settings, field, getattr(original, field))
