import pytest
import pytest_asyncio
from sqlalchemy import create_engine

from chatsync.core.change_feed import InMemoryChangeFeed
from chatsync.core.config import Settings
from chatsync.core.database import make_session_factory
from chatsync.core.errors import BlobStoreError
from chatsync.core.notify import Notifier
from chatsync.core.store import RelationalStore
from chatsync.models import chat  # noqa: F401
from chatsync.models.base import Base
from chatsync.services.engine import ChatEngine


class FakeBlobStore:
    """In-memory stand-in for the MinIO bucket."""

    def __init__(self):
        self.objects = {}
        self.fail = False

    async def upload(self, bucket, path, data, content_type):
        if self.fail:
            raise BlobStoreError("bucket unavailable")
        self.objects[(bucket, path)] = (data, content_type)
        return path

    async def get_url(self, bucket, path):
        return f"https://files.test/{bucket}/{path}"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.errors = []
        self.successes = []

    def success(self, message):
        self.successes.append(message)

    def error(self, message):
        self.errors.append(message)


@pytest.fixture
def test_settings():
    """Short windows so timer-driven behaviour runs quickly."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        REDIS_URL=None,
        READ_DEBOUNCE_SECONDS=0.05,
        READ_DWELL_SECONDS=0.05,
        TYPING_TTL_SECONDS=0.1,
        TYPING_STALE_SECONDS=5.0,
        MESSAGE_PAGE_SIZE=50,
        MAX_UPLOAD_BYTES=1024,
    )


@pytest.fixture
def db_engine(tmp_path):
    # file-backed so store calls on worker threads get their own connections
    engine = create_engine(
        f"sqlite:///{tmp_path / 'chat.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def store(session_factory, feed):
    return RelationalStore(session_factory, feed)


@pytest.fixture
def blob():
    return FakeBlobStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(store, feed, blob, notifier, test_settings, session_factory):
    eng = ChatEngine(
        store,
        feed,
        blob=blob,
        notifier=notifier,
        config=test_settings,
        session_factory=session_factory,
    )
    yield eng
    await eng.close()


@pytest_asyncio.fixture
async def users(store):
    await store.insert(
        "profiles",
        [
            {"id": "alice", "display_name": "Alice", "handle": "alice"},
            {"id": "bob", "display_name": "Bob", "handle": "bob"},
            {"id": "carol", "display_name": None, "handle": "carol"},
        ],
    )
    return ["alice", "bob", "carol"]
