# pylint: disable=redefined-outer-name
import random
from datetime import date, timedelta

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import clear_mappers, sessionmaker

from surveillance.adapters import orm
from surveillance.adapters.base import (
    AbstractSinkAdapter,
    AbstractSourceAdapter,
    AdapterUnavailable,
    ConnectionCheck,
    PullBatch,
    SubmissionResult,
)
from surveillance.adapters.document_store import AbstractDocumentStore, DocumentStoreError
from surveillance.adapters.registry import AdapterRegistry
from surveillance.adapters.sync_lock import InMemorySyncLockManager
from surveillance.domain.model import SubmissionOutcome
from surveillance.domain.validation import parse_date
from surveillance.service_layer.unit_of_work import SqlAlchemyUnitOfWork

TEST_TYPES = ("WNV PCR", "SLE PCR", "EEE PCR")
SPECIES = ("Culex quinquefasciatus", "Culex tarsalis", "Aedes albopictus")


class FakeLabwareAdapter(AbstractSourceAdapter):
    """
    In-memory LabWare stand-in.

    Rows get a LIMS-style sequence number in insertion order; the cursor is
    the last sequence number returned, as with the real Samples table.
    """

    def __init__(self, source_id="labware", batch_size=500):
        self.source_id = source_id
        self.batch_size = batch_size
        self.rows = []
        self.unavailable = False
        self.pull_calls = 0
        self.on_pull = None

    def add(self, *records):
        for record in records:
            self.rows.append((len(self.rows) + 1, dict(record)))

    def generate_samples(self, count, positives, start, end, county="TARRANT", seed=7):
        """Random sample rows for a window; the first `positives` rows are positive."""
        rng = random.Random(seed)
        span = (end - start).days
        offset = len(self.rows)
        records = []
        for i in range(count):
            records.append({
                "sampleId": f"LW-{offset + i + 1:05d}",
                "revision": 1,
                "patientId": f"P-{rng.randint(10000, 99999)}",
                "testType": rng.choice(TEST_TYPES),
                "result": "Positive" if i < positives else "Negative",
                "collectionDate": (start + timedelta(days=rng.randint(0, span))).isoformat(),
                "county": county,
                "location": f"Trap {rng.randint(1, 5)}",
                "latitude": 32.75 + rng.random() / 10,
                "longitude": -97.33 - rng.random() / 10,
                "species": rng.choice(SPECIES),
            })
        self.add(*records)
        return records

    def _in_window(self, record, window):
        try:
            collected = parse_date(record.get("collectionDate"))
        except ValueError:
            return True
        return window.start <= collected <= window.end

    def pull(self, since_cursor, window):
        self.pull_calls += 1
        if self.on_pull is not None:
            self.on_pull()
        if self.unavailable:
            raise AdapterUnavailable("LabWare connection refused")
        after = int(since_cursor) if since_cursor else 0
        matching = [
            (seq, record) for seq, record in self.rows
            if seq > after and self._in_window(record, window)
        ]
        page = matching[: self.batch_size]
        next_cursor = str(page[-1][0]) if page else since_cursor
        return PullBatch(
            records=[dict(record) for _, record in page],
            next_cursor=next_cursor,
            has_more=len(matching) > self.batch_size,
        )

    def check_connection(self):
        if self.unavailable:
            return ConnectionCheck(success=False, message="Connection failed")
        return ConnectionCheck(success=True, message="LabWare connection successful", tables=["Samples"])


class FakeSink(AbstractSinkAdapter):
    """Destination with scripted per-record outcomes; remembers what it accepted."""

    def __init__(self, destination_system, record_kind="case"):
        self.destination_system = destination_system
        self.record_kind = record_kind
        self.outcomes = {}
        self.default_outcome = (SubmissionOutcome.ACCEPTED, None)
        self.accepted = set()
        self.acknowledged_keys = set()
        self.pushed = []
        self.unavailable = False
        self.fail_on_call = None
        self.calls = 0

    def _key(self, record):
        return record.sample_id if self.record_kind == "case" else record.record_id

    def push(self, records):
        self.calls += 1
        if self.unavailable or self.fail_on_call == self.calls:
            raise AdapterUnavailable(f"{self.destination_system} is not reachable")
        results = []
        for record in records:
            key = self._key(record)
            self.pushed.append(key)
            if key in self.accepted:
                results.append(SubmissionResult(key, SubmissionOutcome.DUPLICATE))
                continue
            status, reason = self.outcomes.get(key, self.default_outcome)
            if status == SubmissionOutcome.ACCEPTED:
                self.accepted.add(key)
            results.append(SubmissionResult(key, status, reason))
        return results

    def acknowledged(self, record_keys):
        if self.unavailable:
            raise AdapterUnavailable(f"{self.destination_system} is not reachable")
        return [key for key in record_keys if key in self.acknowledged_keys]


class FakeDocumentStore(AbstractDocumentStore):
    def __init__(self):
        self.documents = {}
        self.fail = False

    def put_json(self, object_key, document):
        if self.fail:
            raise DocumentStoreError("bucket unavailable")
        self.documents[object_key] = document
        return object_key

    def get_json(self, object_key):
        return self.documents.get(object_key)


@pytest.fixture(autouse=True)
def fast_policies(monkeypatch):
    monkeypatch.setenv("ADAPTER_RETRY_ATTEMPTS", "1")
    monkeypatch.setenv("ADAPTER_RETRY_WAIT_MIN", "0")
    monkeypatch.setenv("ADAPTER_RETRY_WAIT_MAX", "0")
    monkeypatch.setenv("PUSH_BATCH_DELAY_SECONDS", "0")
    monkeypatch.setenv("SYNC_LOCK_BACKEND", "memory")


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    from surveillance.adapters import redis_adapter

    client = fakeredis.FakeRedis()
    monkeypatch.setattr(redis_adapter, "r", client)
    return client


@pytest.fixture
def sqlite_session_factory(tmp_path):
    """Create a SQLite database file per test."""
    engine = create_engine(f"sqlite:///{tmp_path / 'surveillance.db'}")
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine, expire_on_commit=False)

    clear_mappers()
    engine.dispose()


@pytest.fixture
def fake_labware():
    return FakeLabwareAdapter()


@pytest.fixture
def fake_nedss():
    return FakeSink("nedss")


@pytest.fixture
def fake_arbonet():
    return FakeSink("arbonet", record_kind="vector")


@pytest.fixture
def fake_documents():
    return FakeDocumentStore()


@pytest.fixture
def sync_locks():
    return InMemorySyncLockManager()


@pytest.fixture
def uow(sqlite_session_factory, fake_labware, fake_nedss, fake_arbonet, sync_locks, fake_documents):
    adapters = AdapterRegistry(
        sources={"labware": fake_labware},
        sinks={"nedss": fake_nedss, "arbonet": fake_arbonet},
        source_mapping={},
        sink_mapping={},
    )
    return SqlAlchemyUnitOfWork(
        sqlite_session_factory,
        adapters=adapters,
        sync_locks=sync_locks,
        documents=fake_documents,
    )


@pytest.fixture
def june_window():
    return date(2024, 6, 1), date(2024, 6, 8)
