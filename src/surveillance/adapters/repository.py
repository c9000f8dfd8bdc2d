import abc
from datetime import date
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_, func, select

from surveillance.domain import model


class AbstractRepository(abc.ABC):
    """Tracks every entity it hands out so the unit of work can collect events."""

    def __init__(self):
        self.seen = set()  # type: Set[object]

    def add(self, entity):
        self._add(entity)
        self.seen.add(entity)
        return entity

    def _track(self, entities):
        for entity in entities:
            self.seen.add(entity)
        return entities

    def _track_one(self, entity):
        if entity is not None:
            self.seen.add(entity)
        return entity

    @abc.abstractmethod
    def _add(self, entity):
        raise NotImplementedError


class SampleRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, sample):
        self.session.add(sample)

    def latest_revision(self, source_id: str, sample_id: str) -> Optional[model.Sample]:
        return self._track_one(
            self.session.query(model.Sample)
            .filter_by(source_id=source_id, sample_id=sample_id)
            .order_by(model.Sample.revision.desc())
            .first()
        )

    def list_in_window(self, start: date, end: date, county: Optional[str] = None) -> List[model.Sample]:
        """Latest revision of every sample collected inside [start, end]."""
        latest = (
            select(
                model.Sample.source_id,
                model.Sample.sample_id,
                func.max(model.Sample.revision).label("revision"),
            )
            .group_by(model.Sample.source_id, model.Sample.sample_id)
            .subquery()
        )
        query = (
            self.session.query(model.Sample)
            .join(
                latest,
                and_(
                    model.Sample.source_id == latest.c.source_id,
                    model.Sample.sample_id == latest.c.sample_id,
                    model.Sample.revision == latest.c.revision,
                ),
            )
            .filter(model.Sample.collection_date >= start)
            .filter(model.Sample.collection_date <= end)
        )
        if county:
            query = query.filter(model.Sample.county == county)
        return self._track(query.order_by(model.Sample.collection_date).all())


class CaseRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, case):
        self.session.add(case)

    def get(self, case_id: str) -> Optional[model.Case]:
        return self._track_one(self.session.query(model.Case).filter_by(case_id=case_id).first())

    def get_by_sample(self, source_id: str, sample_id: str) -> Optional[model.Case]:
        return self._track_one(
            self.session.query(model.Case)
            .filter_by(source_id=source_id, sample_id=sample_id)
            .first()
        )

    def list(
        self,
        county: Optional[str] = None,
        statuses: Optional[Iterable[model.SubmissionStatus]] = None,
        destination_system: Optional[str] = None,
    ) -> List[model.Case]:
        query = self.session.query(model.Case)
        if county:
            query = query.filter(model.Case.county == county)
        if statuses:
            query = query.filter(model.Case.submission_status.in_(list(statuses)))
        if destination_system:
            query = query.filter(model.Case.destination_system == destination_system)
        return self._track(query.order_by(model.Case.created_at, model.Case.case_id).all())

    def count_by_status(self, county: Optional[str] = None) -> dict:
        query = self.session.query(model.Case.submission_status, func.count(model.Case.case_id))
        if county:
            query = query.filter(model.Case.county == county)
        counts = {status.value: 0 for status in model.SubmissionStatus}
        for status, count in query.group_by(model.Case.submission_status).all():
            counts[status.value] = count
        return counts


class VectorRecordRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, record):
        self.session.add(record)

    def get(self, record_id: str) -> Optional[model.VectorRecord]:
        return self.session.query(model.VectorRecord).filter_by(record_id=record_id).first()

    def list_in_window(self, start: date, end: date, county: Optional[str] = None) -> List[model.VectorRecord]:
        query = (
            self.session.query(model.VectorRecord)
            .filter(model.VectorRecord.collection_date >= start)
            .filter(model.VectorRecord.collection_date <= end)
        )
        if county:
            query = query.filter(model.VectorRecord.county == county)
        return query.order_by(model.VectorRecord.collection_date).all()

    def _with_latest_submission(self, county: str, destination_system: str):
        """(record, latest submission or None) for every record of the county."""
        records = (
            self.session.query(model.VectorRecord)
            .filter(model.VectorRecord.county == county)
            .order_by(model.VectorRecord.week_ending, model.VectorRecord.collection_date)
            .all()
        )
        submissions = (
            self.session.query(model.VectorSubmission)
            .join(
                model.VectorRecord,
                model.VectorRecord.record_id == model.VectorSubmission.record_id,
            )
            .filter(model.VectorRecord.county == county)
            .filter(model.VectorSubmission.destination_system == destination_system)
            .order_by(model.VectorSubmission.submitted_at)
            .all()
        )
        latest = {s.record_id: s for s in submissions}
        return [(record, latest.get(record.record_id)) for record in records]

    def list_unsubmitted(self, county: str, destination_system: str) -> List[model.VectorRecord]:
        """Records never sent to the destination, or sent back by a manual retry."""
        return [
            record
            for record, latest in self._with_latest_submission(county, destination_system)
            if latest is None or latest.is_retry_request
        ]

    def list_rejected(self, county: str, destination_system: str) -> List[model.VectorRecord]:
        """Records whose latest answer from the destination was a rejection."""
        return [
            record
            for record, latest in self._with_latest_submission(county, destination_system)
            if latest is not None and latest.outcome == model.SubmissionOutcome.REJECTED
        ]

    def latest_submission(
        self, record_id: str, destination_system: str
    ) -> Optional[model.VectorSubmission]:
        return (
            self.session.query(model.VectorSubmission)
            .filter_by(record_id=record_id, destination_system=destination_system)
            .order_by(model.VectorSubmission.submitted_at.desc())
            .first()
        )

    def add_submission(self, submission: model.VectorSubmission):
        self.session.add(submission)
        return submission

    def submissions_for(self, record_id: str) -> List[model.VectorSubmission]:
        return (
            self.session.query(model.VectorSubmission)
            .filter_by(record_id=record_id)
            .order_by(model.VectorSubmission.submitted_at)
            .all()
        )


class CheckpointRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, checkpoint):
        self.session.add(checkpoint)

    def get(self, source_id: str, region: str) -> Optional[model.SyncCheckpoint]:
        return self.session.query(model.SyncCheckpoint).filter_by(
            source_id=source_id, region=region
        ).first()

    def get_or_create(self, source_id: str, region: str) -> model.SyncCheckpoint:
        checkpoint = self.get(source_id, region)
        if checkpoint is None:
            checkpoint = self.add(model.SyncCheckpoint(source_id=source_id, region=region))
        return checkpoint

    def list(self, region: Optional[str] = None) -> List[model.SyncCheckpoint]:
        query = self.session.query(model.SyncCheckpoint)
        if region:
            query = query.filter(model.SyncCheckpoint.region == region)
        return query.order_by(model.SyncCheckpoint.source_id, model.SyncCheckpoint.region).all()


class SyncJobRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, job):
        self.session.add(job)

    def get(self, job_id: str) -> Optional[model.SyncJob]:
        return self._track_one(self.session.query(model.SyncJob).filter_by(job_id=job_id).first())

    def latest(self, region: Optional[str] = None) -> List[model.SyncJob]:
        """Most recent job per (kind, system, region)."""
        query = self.session.query(model.SyncJob)
        if region:
            query = query.filter(model.SyncJob.region == region)
        latest = {}
        for job in query.order_by(model.SyncJob.started_at.desc()).all():
            latest.setdefault((job.kind, job.system_id, job.region), job)
        return list(latest.values())


class ReportRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, report):
        self.session.add(report)

    def get(self, report_id: str) -> Optional[model.Report]:
        return self.session.query(model.Report).filter_by(id=report_id).first()

    def history(
        self,
        county: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[model.Report], int]:
        """Newest first. Date filters apply to the report's week ending."""
        query = self.session.query(model.Report)
        if county:
            query = query.filter(model.Report.county == county)
        if start_date:
            query = query.filter(model.Report.week_ending >= start_date)
        if end_date:
            query = query.filter(model.Report.week_ending <= end_date)
        total = query.count()
        items = (
            query.order_by(model.Report.generated_at.desc(), model.Report.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total
