# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session


import config
from surveillance.adapters import document_store, registry, repository, sync_lock


class AbstractUnitOfWork(abc.ABC):
    _carried = []  # entities from closed sessions whose events are not yet collected
    samples: repository.SampleRepository
    cases: repository.CaseRepository
    vector_records: repository.VectorRecordRepository
    checkpoints: repository.CheckpointRepository
    sync_jobs: repository.SyncJobRepository
    reports: repository.ReportRepository
    adapters: registry.AdapterRegistry
    sync_locks: sync_lock.AbstractSyncLockManager
    documents: document_store.AbstractDocumentStore

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def collect_new_events(self):
        for entity in self._carried + self._entities_with_events():
            while entity.events:
                yield entity.events.pop(0)
        self._carried = []

    def _entities_with_events(self):
        entities = []
        for name in ("cases", "sync_jobs", "reports"):
            repo = getattr(self, name, None)
            if repo is None:
                continue
            entities.extend(e for e in repo.seen if e.events)
        return entities

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="REPEATABLE READ",
    ),
    expire_on_commit=False,
)


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    One session per `with uow:` block.

    External collaborators (adapters, sync lease, document store) live on the
    unit of work instead of module globals so handlers receive them explicitly.
    """

    def __init__(
        self,
        session_factory=DEFAULT_SESSION_FACTORY,
        adapters=None,
        sync_locks=None,
        documents=None,
    ):
        self.session_factory = session_factory
        self.adapters = adapters or registry.AdapterRegistry()
        self.sync_locks = sync_locks or sync_lock.default_lock_manager()
        self._documents = documents

    @property
    def documents(self):
        if self._documents is None:
            self._documents = document_store.MinIODocumentStore()
        return self._documents

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.samples = repository.SampleRepository(self.session)
        self.cases = repository.CaseRepository(self.session)
        self.vector_records = repository.VectorRecordRepository(self.session)
        self.checkpoints = repository.CheckpointRepository(self.session)
        self.sync_jobs = repository.SyncJobRepository(self.session)
        self.reports = repository.ReportRepository(self.session)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self._carried = self._carried + self._entities_with_events()
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
