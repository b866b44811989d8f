# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session


import config
from study_workflow.adapters import repository, document_store


class AbstractUnitOfWork(abc.ABC):
    studies: repository.AbstractRepository
    doctors: repository.AbstractDoctorRepository
    document_store: document_store.AbstractDocumentStore

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def collect_new_events(self):
        for study in self.studies.seen:
            while study.events:
                yield study.events.pop(0)

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
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY, document_store_impl=None):
        self.session_factory = session_factory
        self.document_store_impl = document_store_impl or document_store.HTTPDocumentStore()

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.studies = repository.SqlAlchemyRepository(self.session)
        self.doctors = repository.SqlAlchemyDoctorRepository(self.session)
        self.document_store = self.document_store_impl
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
