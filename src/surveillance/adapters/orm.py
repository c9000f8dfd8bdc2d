import logging
from datetime import timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    false,
)
from sqlalchemy.orm import registry

from surveillance.domain import model

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends that drop tzinfo (SQLite)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum(enum_cls):
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


samples = Table(
    "samples",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("source_id", String(64), nullable=False),
    Column("sample_id", String(255), nullable=False),
    Column("revision", Integer, nullable=False, server_default="1"),
    Column("patient_id", String(255), nullable=False),
    Column("test_type", String(255), nullable=False),
    Column("result", _enum(model.SampleResult), nullable=False),
    Column("collection_date", Date, nullable=False, index=True),
    Column("county", String(64), nullable=False, index=True),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("location_name", String(255)),
    Column("species", String(255)),
    Column("supersedes_id", String(36)),
    Column("ingested_at", UTCDateTime, nullable=False),
    UniqueConstraint("source_id", "sample_id", "revision", name="uq_sample_revision"),
)

cases = Table(
    "cases",
    metadata,
    Column("case_id", String(36), primary_key=True),
    Column("source_id", String(64), nullable=False),
    Column("sample_id", String(255), nullable=False),
    Column("sample_revision", Integer, nullable=False),
    Column("patient_id", String(255), nullable=False),
    Column("test_type", String(255), nullable=False),
    Column("county", String(64), nullable=False, index=True),
    Column("collection_date", Date, nullable=False),
    Column("destination_system", String(64), nullable=False),
    Column("submission_status", _enum(model.SubmissionStatus), nullable=False, index=True),
    Column("reported_at", UTCDateTime),
    Column("last_reason", Text),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("withdrawn", Boolean, nullable=False, server_default=false()),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    UniqueConstraint("source_id", "sample_id", name="uq_case_sample"),
)

vector_records = Table(
    "vector_records",
    metadata,
    Column("record_id", String(64), primary_key=True),
    Column("county", String(64), nullable=False, index=True),
    Column("week_ending", Date, nullable=False, index=True),
    Column("species", String(255), nullable=False),
    Column("count", Integer, nullable=False),
    Column("trap_type", String(255), nullable=False),
    Column("collection_date", Date, nullable=False, index=True),
    Column("location_name", String(255)),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("ingested_at", UTCDateTime, nullable=False),
)

vector_submissions = Table(
    "vector_submissions",
    metadata,
    Column("submission_id", String(36), primary_key=True),
    Column("record_id", String(64), nullable=False, index=True),
    Column("destination_system", String(64), nullable=False),
    Column("week_ending", Date, nullable=False),
    Column("outcome", _enum(model.SubmissionOutcome)),
    Column("reason", Text),
    Column("requested_by", String(255)),
    Column("submitted_at", UTCDateTime, nullable=False),
)

sync_checkpoints = Table(
    "sync_checkpoints",
    metadata,
    Column("source_id", String(64), primary_key=True),
    Column("region", String(64), primary_key=True),
    Column("last_cursor", String(255)),
    Column("last_synced_at", UTCDateTime),
    Column("window_start", Date),
    Column("window_end", Date),
)

sync_jobs = Table(
    "sync_jobs",
    metadata,
    Column("job_id", String(36), primary_key=True),
    Column("kind", String(32), nullable=False),
    Column("system_id", String(64), nullable=False),
    Column("region", String(64), nullable=False),
    Column("requested_by", String(255)),
    Column("state", _enum(model.SyncJobState), nullable=False),
    Column("counts", JSON, nullable=False),
    Column("quarantined", JSON, nullable=False),
    Column("error", Text),
    Column("started_at", UTCDateTime, nullable=False, index=True),
    Column("finished_at", UTCDateTime),
)

reports = Table(
    "reports",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("county", String(64), nullable=False, index=True),
    Column("week_ending", Date, nullable=False, index=True),
    Column("report_type", _enum(model.ReportType), nullable=False),
    Column("window_start", Date, nullable=False),
    Column("window_end", Date, nullable=False),
    Column("generated_at", UTCDateTime, nullable=False, index=True),
    Column("generated_by", String(255), nullable=False),
    Column("summary", JSON, nullable=False),
    Column("file_path", String(512)),
)

# Read model table - not mapped to a domain entity, written by event handlers
audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(64), nullable=False),
    Column("actor", String(255)),
    Column("entity", String(64), nullable=False),
    Column("entity_id", String(64)),
    Column("details", JSON),
    Column("created_at", UTCDateTime, nullable=False),
)


def start_mappers():
    logger.info("Starting mappers")
    mapper_registry.map_imperatively(model.Sample, samples)
    mapper_registry.map_imperatively(model.Case, cases)
    mapper_registry.map_imperatively(model.VectorRecord, vector_records)
    mapper_registry.map_imperatively(model.VectorSubmission, vector_submissions)
    mapper_registry.map_imperatively(model.SyncCheckpoint, sync_checkpoints)
    mapper_registry.map_imperatively(model.SyncJob, sync_jobs)
    mapper_registry.map_imperatively(model.Report, reports)


@event.listens_for(model.Case, "load")
def receive_case_load(case, _):
    case.events = []


@event.listens_for(model.SyncJob, "load")
def receive_job_load(job, _):
    job.events = []


@event.listens_for(model.Report, "load")
def receive_report_load(report, _):
    report.events = []


@event.listens_for(model.Sample, "load")
def receive_sample_load(sample, _):
    sample.warnings = []


@event.listens_for(model.VectorRecord, "load")
def receive_vector_load(record, _):
    record.warnings = []
