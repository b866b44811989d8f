import abc
from typing import Optional, Set
from study_workflow.domain import model

import logging

logger = logging.getLogger(__name__)


class AbstractRepository(abc.ABC):
    def __init__(self):
        self.seen = set()  # type: Set[model.Study]

    def add(self, study: model.Study) -> str:
        self._add(study)
        self.seen.add(study)
        return study.study_id

    def get(self, study_id) -> Optional[model.Study]:
        study = self._get(study_id)
        if study:
            self.seen.add(study)
        return study

    @abc.abstractmethod
    def _add(self, study: model.Study):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, study_id) -> Optional[model.Study]:
        raise NotImplementedError


class SqlAlchemyRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, study):
        self.session.add(study)

    def _get(self, study_id):
        return self.session.query(model.Study).filter_by(study_id=study_id).first()


class AbstractDoctorRepository(abc.ABC):
    """Doctors are owned by the user directory; the engine only reads them."""

    @abc.abstractmethod
    def get(self, doctor_id) -> Optional[model.Doctor]:
        raise NotImplementedError

    @abc.abstractmethod
    def add(self, doctor: model.Doctor):
        raise NotImplementedError


class SqlAlchemyDoctorRepository(AbstractDoctorRepository):
    def __init__(self, session):
        self.session = session

    def get(self, doctor_id):
        return self.session.query(model.Doctor).filter_by(doctor_id=doctor_id).first()

    def add(self, doctor):
        self.session.add(doctor)
