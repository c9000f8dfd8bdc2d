"""
Views for read operations - separate from command/write path.

Analytics are computed on demand from canonical storage, never from a cache,
so every call reflects exactly what is stored at read time.
"""
import logging
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy import select

from surveillance import analytics
from surveillance.adapters import orm
from surveillance.domain import model
from surveillance.domain.validation import normalize_county
from surveillance.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value is not None else None


def case_to_dict(case: model.Case) -> Dict[str, Any]:
    return {
        "caseId": case.case_id,
        "sourceId": case.source_id,
        "sampleId": case.sample_id,
        "sampleRevision": case.sample_revision,
        "patientId": case.patient_id,
        "testType": case.test_type,
        "county": case.county,
        "collectionDate": _iso(case.collection_date),
        "destinationSystem": case.destination_system,
        "submissionStatus": case.submission_status.value,
        "reportedAt": _iso(case.reported_at),
        "lastReason": case.last_reason,
        "attempts": case.attempts,
        "withdrawn": case.withdrawn,
        "createdAt": _iso(case.created_at),
        "updatedAt": _iso(case.updated_at),
    }


def job_to_dict(job: model.SyncJob) -> Dict[str, Any]:
    return {
        "jobId": job.job_id,
        "kind": job.kind,
        "systemId": job.system_id,
        "region": job.region,
        "state": job.state.value,
        "counts": dict(job.counts),
        "quarantined": list(job.quarantined),
        "error": job.error,
        "requestedBy": job.requested_by,
        "startedAt": _iso(job.started_at),
        "finishedAt": _iso(job.finished_at),
    }


def report_to_dict(report: model.Report) -> Dict[str, Any]:
    return {
        "id": report.id,
        "county": report.county,
        "weekEnding": _iso(report.week_ending),
        "reportType": report.report_type.value,
        "windowStart": _iso(report.window_start),
        "windowEnd": _iso(report.window_end),
        "generatedAt": _iso(report.generated_at),
        "generatedBy": report.generated_by,
        "summary": report.summary,
        "filePath": report.file_path,
    }


def _county_or_none(county):
    return normalize_county(county) if county else None


def analytics_summary(
    uow: AbstractUnitOfWork,
    county: Optional[str] = None,
    time_range: Optional[str] = None,
    start_date=None,
    end_date=None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """AnalyticsSnapshot for a county (or every county) over the requested range."""
    county = _county_or_none(county)
    start, end = analytics.resolve_time_range(time_range, start_date, end_date, today=today)
    with uow:
        samples = uow.samples.list_in_window(start, end, county)
        vectors = uow.vector_records.list_in_window(start, end, county)
        snapshot = analytics.compute_summary(samples, vectors, start, end, county)
    logger.info(
        f"Analytics for {county or 'all counties'} {start}..{end}: "
        f"{snapshot['totalSamples']} samples, {snapshot['positiveCases']} positive"
    )
    return snapshot


def analytics_export(
    uow: AbstractUnitOfWork,
    export_format: str = "json",
    county: Optional[str] = None,
    time_range: Optional[str] = None,
    start_date=None,
    end_date=None,
    today: Optional[date] = None,
) -> analytics.ExportPayload:
    snapshot = analytics_summary(uow, county, time_range, start_date, end_date, today=today)
    return analytics.export_snapshot(snapshot, export_format)


def report_history(
    uow: AbstractUnitOfWork,
    county: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    """Generated reports, newest first, with the total before pagination."""
    county = _county_or_none(county)
    with uow:
        items, total = uow.reports.history(county, start_date, end_date, limit=limit, offset=offset)
        return {
            "items": [report_to_dict(r) for r in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        }


def get_report(uow: AbstractUnitOfWork, report_id: str) -> Optional[Dict[str, Any]]:
    with uow:
        report = uow.reports.get(report_id)
        return report_to_dict(report) if report else None


def sync_status(uow: AbstractUnitOfWork, region: Optional[str] = None) -> Dict[str, Any]:
    """Latest job per (kind, system, region), checkpoints and case counts."""
    region = _county_or_none(region)
    with uow:
        return {
            "jobs": [job_to_dict(job) for job in uow.sync_jobs.latest(region)],
            "checkpoints": [
                {
                    "sourceId": cp.source_id,
                    "region": cp.region,
                    "lastCursor": cp.last_cursor,
                    "windowStart": _iso(cp.window_start),
                    "windowEnd": _iso(cp.window_end),
                    "lastSyncedAt": _iso(cp.last_synced_at),
                }
                for cp in uow.checkpoints.list(region)
            ],
            "caseCounts": uow.cases.count_by_status(region),
        }


def list_cases(
    uow: AbstractUnitOfWork,
    region: Optional[str] = None,
    status: Optional[str] = None,
    destination_system: Optional[str] = None,
):
    region = _county_or_none(region)
    statuses = [model.SubmissionStatus(status)] if status else None
    with uow:
        return [
            case_to_dict(case)
            for case in uow.cases.list(region, statuses, destination_system)
        ]


def audit_entries(uow: AbstractUnitOfWork, entity: Optional[str] = None, limit: int = 100):
    """Most recent audit_log rows, written by event handlers."""
    query = select(orm.audit_log).order_by(orm.audit_log.c.id.desc()).limit(limit)
    if entity:
        query = query.where(orm.audit_log.c.entity == entity)
    with uow:
        rows = uow.session.execute(query).mappings().all()
        return [
            {
                "action": row["action"],
                "actor": row["actor"],
                "entity": row["entity"],
                "entityId": row["entity_id"],
                "details": row["details"],
                "createdAt": _iso(row["created_at"]),
            }
            for row in rows
        ]
