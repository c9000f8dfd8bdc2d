"""
Canonical surveillance model.

Every external system (LabWare LIMS, Texas NEDSS, CDC ArboNET) is translated
to and from these entities. Samples and vector records are immutable once
created; cases only ever advance their submission status; reports are never
touched after they are generated.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from surveillance.domain import events


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class SampleResult(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    INDETERMINATE = "indeterminate"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


class SubmissionOutcome(str, Enum):
    """Per-record answer of a sink. Outcomes are values, not errors."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class ReportType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class SyncJobState(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    DEDUPLICATING = "deduplicating"
    PERSISTING = "persisting"
    PUSHING = "pushing"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidStatusTransition(Exception):
    """Raised when an entity is asked to move to a state it cannot reach."""
    pass


@dataclass(eq=False)
class Sample:
    """A single lab test as pulled from a laboratory source."""
    source_id: str
    sample_id: str
    patient_id: str
    test_type: str
    result: SampleResult
    collection_date: date
    county: str
    revision: int = 1
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    species: Optional[str] = None
    supersedes_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    ingested_at: datetime = field(default_factory=utcnow)
    warnings: List[str] = field(default_factory=list)

    def is_positive(self) -> bool:
        return self.result == SampleResult.POSITIVE

    def supersede(self, prior: "Sample") -> None:
        """Link this revision to the version it replaces."""
        self.supersedes_id = prior.id

    @property
    def location(self):
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


# pending -> submitted -> acknowledged, pending/submitted -> failed.
# failed -> pending is only reachable through Case.retry().
CASE_TRANSITIONS = {
    SubmissionStatus.PENDING: {SubmissionStatus.SUBMITTED, SubmissionStatus.FAILED},
    SubmissionStatus.SUBMITTED: {SubmissionStatus.ACKNOWLEDGED, SubmissionStatus.FAILED},
    SubmissionStatus.ACKNOWLEDGED: set(),
    SubmissionStatus.FAILED: set(),
}


@dataclass(eq=False)
class Case:
    """A positive sample promoted for mandatory reporting."""
    source_id: str
    sample_id: str
    sample_revision: int
    patient_id: str
    test_type: str
    county: str
    collection_date: date
    destination_system: str
    submission_status: SubmissionStatus = SubmissionStatus.PENDING
    reported_at: Optional[datetime] = None
    last_reason: Optional[str] = None
    attempts: int = 0
    withdrawn: bool = False
    case_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    events: List = field(default_factory=list)

    @classmethod
    def promote(cls, sample: Sample, destination_system: str) -> "Case":
        case = cls(
            source_id=sample.source_id,
            sample_id=sample.sample_id,
            sample_revision=sample.revision,
            patient_id=sample.patient_id,
            test_type=sample.test_type,
            county=sample.county,
            collection_date=sample.collection_date,
            destination_system=destination_system,
        )
        case.events.append(
            events.CasePromoted(
                case_id=case.case_id,
                sample_id=case.sample_id,
                county=case.county,
                test_type=case.test_type,
                destination_system=destination_system,
            )
        )
        return case

    def _unreported(self) -> bool:
        return self.submission_status in (SubmissionStatus.PENDING, SubmissionStatus.FAILED)

    def refresh_from(self, sample: Sample) -> bool:
        """Point a case the destination does not hold yet at a newer revision of its sample."""
        if not self._unreported():
            return False
        if sample.revision <= self.sample_revision:
            return False
        self.sample_revision = sample.revision
        self.test_type = sample.test_type
        self.collection_date = sample.collection_date
        if self.withdrawn:
            self.withdrawn = False
            self.last_reason = None
        self.updated_at = utcnow()
        return True

    def withdraw(self, sample: Sample, reason: str) -> bool:
        """
        Hold back an unreported case whose newest sample revision is no
        longer reportable. Push skips withdrawn cases, also after a manual
        retry; a later reportable revision reinstates the case through
        refresh_from().
        """
        if not self._unreported():
            return False
        if sample.revision <= self.sample_revision:
            return False
        self.sample_revision = sample.revision
        self.test_type = sample.test_type
        self.collection_date = sample.collection_date
        self.withdrawn = True
        self.last_reason = reason
        self.updated_at = utcnow()
        self.events.append(
            events.CaseWithdrawn(
                case_id=self.case_id,
                sample_id=self.sample_id,
                sample_revision=sample.revision,
                reason=reason,
            )
        )
        return True

    def _advance(self, new_status: SubmissionStatus, reason: Optional[str] = None):
        if new_status not in CASE_TRANSITIONS[self.submission_status]:
            raise InvalidStatusTransition(
                f"Case {self.case_id}: {self.submission_status.value} -> {new_status.value}"
            )
        previous = self.submission_status
        self.submission_status = new_status
        self.last_reason = reason
        self.updated_at = utcnow()
        self.events.append(
            events.CaseStatusChanged(
                case_id=self.case_id,
                sample_id=self.sample_id,
                previous_status=previous.value,
                new_status=new_status.value,
                reason=reason,
            )
        )

    def mark_submitted(self) -> None:
        self._advance(SubmissionStatus.SUBMITTED)
        self.reported_at = utcnow()

    def acknowledge(self) -> None:
        self._advance(SubmissionStatus.ACKNOWLEDGED)

    def fail(self, reason: str) -> None:
        self._advance(SubmissionStatus.FAILED, reason)

    def retry(self, requested_by: Optional[str] = None) -> None:
        """Explicit manual retry, the only way out of the failed state."""
        if self.submission_status != SubmissionStatus.FAILED:
            raise InvalidStatusTransition(
                f"Case {self.case_id}: only failed cases can be retried "
                f"(status is {self.submission_status.value})"
            )
        previous = self.submission_status
        self.submission_status = SubmissionStatus.PENDING
        if not self.withdrawn:
            self.last_reason = None
        self.updated_at = utcnow()
        self.events.append(
            events.CaseStatusChanged(
                case_id=self.case_id,
                sample_id=self.sample_id,
                previous_status=previous.value,
                new_status=SubmissionStatus.PENDING.value,
                reason="manual retry",
                requested_by=requested_by,
            )
        )

    def apply(self, outcome: "SubmissionOutcome", reason: Optional[str] = None) -> None:
        """Advance the case according to the sink's answer for it."""
        self.attempts += 1
        if outcome == SubmissionOutcome.ACCEPTED:
            self.mark_submitted()
        elif outcome == SubmissionOutcome.DUPLICATE:
            # The destination already holds this case.
            if self.submission_status == SubmissionStatus.PENDING:
                self.mark_submitted()
            self.acknowledge()
        elif outcome == SubmissionOutcome.REJECTED:
            self.fail(reason or "rejected by destination")
        else:
            raise ValueError(f"Unknown submission outcome {outcome}")


@dataclass(eq=False)
class VectorRecord:
    """A trapping/collection event. Identified by its natural key."""
    record_id: str
    county: str
    week_ending: date
    species: str
    count: int
    trap_type: str
    collection_date: date
    location_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    ingested_at: datetime = field(default_factory=utcnow)
    warnings: List[str] = field(default_factory=list)

    @property
    def location(self):
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


@dataclass(eq=False)
class VectorSubmission:
    """
    One push attempt of a vector record to a sink. Appended, never updated.

    A row without an outcome is a manual retry request: it sends a rejected
    record back to the queue for the next push.
    """
    record_id: str
    destination_system: str
    week_ending: date
    outcome: Optional[SubmissionOutcome]
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    submission_id: str = field(default_factory=new_id)
    submitted_at: datetime = field(default_factory=utcnow)

    @property
    def is_retry_request(self) -> bool:
        return self.outcome is None

    @classmethod
    def retry_request(
        cls, previous: "VectorSubmission", requested_by: Optional[str] = None
    ) -> "VectorSubmission":
        """Manual retry of a rejected submission, the only way to send it again."""
        if previous.outcome != SubmissionOutcome.REJECTED:
            state = previous.outcome.value if previous.outcome else "already queued for retry"
            raise InvalidStatusTransition(
                f"Vector record {previous.record_id}: only rejected submissions can be retried "
                f"(latest is {state})"
            )
        return cls(
            record_id=previous.record_id,
            destination_system=previous.destination_system,
            week_ending=previous.week_ending,
            outcome=None,
            reason="manual retry",
            requested_by=requested_by,
        )


@dataclass(eq=False)
class SyncCheckpoint:
    """
    Resumable cursor per (source, region). Owned by the sync engine.

    A source cursor only orders rows inside the collection window it was
    issued for, so the window is stored with it. Pulling another window
    starts that window from the beginning; deduplication absorbs the
    records that were already stored.
    """
    source_id: str
    region: str
    last_cursor: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    window_start: Optional[date] = None
    window_end: Optional[date] = None

    def cursor_for(self, window_start: date, window_end: date) -> Optional[str]:
        if (self.window_start, self.window_end) != (window_start, window_end):
            return None
        return self.last_cursor

    def advance(
        self,
        cursor: Optional[str],
        synced_at: datetime,
        window_start: Optional[date] = None,
        window_end: Optional[date] = None,
    ) -> None:
        if (self.window_start, self.window_end) != (window_start, window_end):
            self.window_start = window_start
            self.window_end = window_end
            self.last_cursor = cursor
        elif cursor is not None:
            self.last_cursor = cursor
        if self.last_synced_at is None or synced_at > self.last_synced_at:
            self.last_synced_at = synced_at


SYNC_JOB_TRANSITIONS = {
    SyncJobState.IDLE: {SyncJobState.PULLING, SyncJobState.PUSHING, SyncJobState.FAILED},
    SyncJobState.PULLING: {SyncJobState.DEDUPLICATING, SyncJobState.COMPLETED, SyncJobState.FAILED},
    SyncJobState.DEDUPLICATING: {SyncJobState.PERSISTING, SyncJobState.FAILED},
    SyncJobState.PERSISTING: {
        SyncJobState.PULLING,
        SyncJobState.PUSHING,
        SyncJobState.COMPLETED,
        SyncJobState.FAILED,
    },
    SyncJobState.PUSHING: {SyncJobState.SUBMITTING, SyncJobState.COMPLETED, SyncJobState.FAILED},
    SyncJobState.SUBMITTING: {SyncJobState.PUSHING, SyncJobState.COMPLETED, SyncJobState.FAILED},
    SyncJobState.COMPLETED: set(),
    SyncJobState.FAILED: set(),
}


@dataclass(eq=False)
class SyncJob:
    """A single pull or push run and where it got to."""
    kind: str
    system_id: str
    region: str
    requested_by: Optional[str] = None
    state: SyncJobState = SyncJobState.IDLE
    counts: Dict[str, Any] = field(default_factory=dict)
    quarantined: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    job_id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    events: List = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in (SyncJobState.COMPLETED, SyncJobState.FAILED)

    def transition(self, new_state: SyncJobState) -> None:
        if new_state not in SYNC_JOB_TRANSITIONS[self.state]:
            raise InvalidStatusTransition(
                f"Sync job {self.job_id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def record(self, **counts) -> None:
        # Reassign so the JSON column sees the change.
        merged = dict(self.counts)
        for key, value in counts.items():
            merged[key] = merged.get(key, 0) + value
        self.counts = merged

    def quarantine(self, record_key: Optional[str], reason: str) -> None:
        self.quarantined = self.quarantined + [{"recordId": record_key, "reason": reason}]

    def complete(self) -> None:
        self.transition(SyncJobState.COMPLETED)
        self.finished_at = utcnow()
        self.events.append(
            events.SyncCompleted(
                job_id=self.job_id,
                kind=self.kind,
                system_id=self.system_id,
                region=self.region,
                counts=dict(self.counts),
                requested_by=self.requested_by,
            )
        )

    def fail(self, error: str) -> None:
        self.transition(SyncJobState.FAILED)
        self.error = error
        self.finished_at = utcnow()
        self.events.append(
            events.SyncFailed(
                job_id=self.job_id,
                kind=self.kind,
                system_id=self.system_id,
                region=self.region,
                error=error,
                counts=dict(self.counts),
                requested_by=self.requested_by,
            )
        )


@dataclass(eq=False)
class Report:
    """A generated surveillance report. Never regenerated in place."""
    county: str
    week_ending: date
    report_type: ReportType
    generated_by: str
    window_start: date
    window_end: date
    summary: Dict[str, Any] = field(default_factory=dict)
    file_path: Optional[str] = None
    id: str = field(default_factory=new_id)
    generated_at: datetime = field(default_factory=utcnow)
    events: List = field(default_factory=list)

    def generate(self) -> None:
        """Mark the report as generated and raise its domain event."""
        self.events.append(
            events.ReportGenerated(
                report_id=self.id,
                county=self.county,
                week_ending=self.week_ending,
                report_type=self.report_type.value,
                generated_by=self.generated_by,
                file_path=self.file_path,
            )
        )
