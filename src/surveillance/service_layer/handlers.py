import logging
import time
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, bindparam, text

import config
from surveillance import analytics, views
from surveillance.adapters import redis_adapter
from surveillance.adapters.base import AdapterUnavailable, PullWindow, with_retry
from surveillance.adapters.orm import UTCDateTime
from surveillance.adapters.sync_lock import ConcurrencyConflict
from surveillance.domain import commands, events, model
from surveillance.domain.model import SubmissionOutcome, SubmissionStatus, SyncJobState
from surveillance.domain.validation import (
    ValidationError,
    normalize_county,
    parse_date,
    validate_sample,
    validate_vector_record,
)
from surveillance.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


class CaseNotFound(Exception):
    pass


class VectorRecordNotFound(Exception):
    pass


def _counts_result(job: model.SyncJob, *keys) -> Dict[str, int]:
    return {key: job.counts.get(key, 0) for key in keys}


PULL_COUNTS = (
    "samplesProcessed",
    "newSamples",
    "updatedSamples",
    "duplicates",
    "quarantined",
    "casesCreated",
)
PUSH_COUNTS = ("submitted", "accepted", "rejected", "duplicate", "failed")


def _fail_job(uow: AbstractUnitOfWork, job_id: str, error: str, **counts) -> None:
    with uow:
        job = uow.sync_jobs.get(job_id)
        if not job.is_terminal:
            if counts:
                job.record(**counts)
            job.fail(error)
            uow.commit()


def _renew_lease(uow: AbstractUnitOfWork, job_id: str, lease, **counts) -> Optional[str]:
    """Extend the job's lease; fails the job and returns the reason if it was lost."""
    if lease is None:
        return None
    try:
        lease.renew()
    except ConcurrencyConflict as e:
        logger.error(f"Job {job_id} stopped: {e}")
        _fail_job(uow, job_id, str(e), **counts)
        return str(e)
    return None


def _job_summary(uow: AbstractUnitOfWork, job_id: str, count_keys, **extra_counts) -> Dict[str, Any]:
    """Caller-facing result of a finished job; extra_counts nest further count groups."""
    with uow:
        job = uow.sync_jobs.get(job_id)
        result = _job_result(job, count_keys)
        if job.kind == "pull":
            result["quarantinedRecords"] = list(job.quarantined)
        for name, keys in extra_counts.items():
            result[name] = _counts_result(job, *keys)
        return result


def _job_result(job: model.SyncJob, count_keys) -> Dict[str, Any]:
    result = {
        "jobId": job.job_id,
        "status": job.state.value,
        "error": job.error,
        "syncTime": (job.finished_at or model.utcnow()).isoformat(),
    }
    result.update(_counts_result(job, *count_keys))
    return result


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


def promote_to_case(
    sample: model.Sample,
    uow: AbstractUnitOfWork,
    destination_system: str,
    reportable_test_types=frozenset(),
) -> Optional[model.Case]:
    """
    Create a pending Case for a reportable positive sample.

    An existing case that the destination does not hold yet follows the
    newer revision: it is refreshed while the sample stays reportable and
    withdrawn from pushing once it is not. Returns the new case, or None
    when none was created.
    """
    if not sample.is_positive():
        reason = f"revision {sample.revision} result is {sample.result.value}"
    elif reportable_test_types and sample.test_type.upper() not in reportable_test_types:
        reason = f"revision {sample.revision} test type {sample.test_type} is not reportable"
    else:
        reason = None
    if reason is not None and sample.supersedes_id is None:
        # nothing was stored for this sample before, so no case can follow it
        return None

    existing = uow.cases.get_by_sample(sample.source_id, sample.sample_id)
    if reason is not None:
        if existing is not None:
            if existing.withdraw(sample, reason):
                logger.warning(f"Case {existing.case_id} withdrawn: {reason}")
            elif existing.submission_status in (SubmissionStatus.SUBMITTED, SubmissionStatus.ACKNOWLEDGED):
                logger.warning(
                    f"Case {existing.case_id} was already reported to {existing.destination_system}, "
                    f"but {reason}"
                )
        return None

    if existing is not None:
        if existing.refresh_from(sample):
            logger.info(f"Case {existing.case_id} now follows revision {sample.revision}")
        return None

    case = model.Case.promote(sample, destination_system)
    uow.cases.add(case)
    logger.info(f"Promoted sample {sample.sample_id} to case {case.case_id}")
    return case


def _deduplicate(
    uow: AbstractUnitOfWork,
    source_id: str,
    region: str,
    records: List[Dict[str, Any]],
    job: model.SyncJob,
    today: date,
):
    """Validate a raw batch and split it into samples to persist and their counts."""
    region_codes = config.get_region_codes()
    latest_in_batch = {}  # type: Dict[str, model.Sample]
    to_persist = []
    counts = dict(samplesProcessed=0, newSamples=0, updatedSamples=0, duplicates=0, quarantined=0)

    for raw in records:
        record_key = raw.get("sampleId") if isinstance(raw, dict) else None
        try:
            sample = validate_sample(raw, source_id, today=today, region_codes=region_codes)
        except ValidationError as e:
            logger.warning(f"Quarantined record {record_key} from {source_id}: {e}")
            job.quarantine(record_key, str(e))
            counts["quarantined"] += 1
            continue

        if sample.county != region:
            reason = f"county {sample.county} is outside region {region}"
            logger.warning(f"Quarantined record {record_key} from {source_id}: {reason}")
            job.quarantine(record_key, reason)
            counts["quarantined"] += 1
            continue

        for warning in sample.warnings:
            logger.warning(f"Sample {sample.sample_id}: {warning}")

        prior = latest_in_batch.get(sample.sample_id) or uow.samples.latest_revision(
            source_id, sample.sample_id
        )
        if prior is not None and sample.revision <= prior.revision and (
            sample.collection_date != prior.collection_date
        ):
            reason = (
                f"revision {sample.revision} conflicts with stored revision {prior.revision} "
                f"collected {prior.collection_date.isoformat()}"
            )
            logger.warning(f"Quarantined record {record_key} from {source_id}: {reason}")
            job.quarantine(record_key, reason)
            counts["quarantined"] += 1
            continue

        counts["samplesProcessed"] += 1
        if prior is None:
            counts["newSamples"] += 1
        elif sample.revision > prior.revision:
            sample.supersede(prior)
            counts["updatedSamples"] += 1
        else:
            counts["duplicates"] += 1
            continue

        latest_in_batch[sample.sample_id] = sample
        to_persist.append(sample)

    return to_persist, counts


def run_pull(command: commands.RunPull, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """
    Pull new records for (source, region) and persist them batch by batch.

    Flow per batch:
    1. Pull from the source adapter, starting at the stored checkpoint cursor
    2. Validate and deduplicate; invalid records are quarantined
    3. Persist samples and cases, then advance the checkpoint, in one transaction

    Raises:
        UnknownAdapter: If no adapter is configured for the source
        ConcurrencyConflict: If a job for the same (source, region) is running
        ValidationError: If the region is not a known region code
    """
    region = normalize_county(command.region)
    start = parse_date(command.start_date)
    end = parse_date(command.end_date)
    if start > end:
        raise ValueError(f"startDate {start.isoformat()} is after endDate {end.isoformat()}")

    source = uow.adapters.source(command.source_id)
    sink = uow.adapters.sink(command.push_to) if command.push_to else None
    lease = uow.sync_locks.acquire(command.source_id, region)
    try:
        push_lease = uow.sync_locks.acquire(command.push_to, region) if sink is not None else None
    except Exception:
        lease.release()
        raise
    logger.info(f"Processing RunPull for {command.source_id}/{region} {start}..{end}")

    try:
        with uow:
            job = model.SyncJob(
                kind="pull",
                system_id=command.source_id,
                region=region,
                requested_by=command.requested_by,
            )
            uow.sync_jobs.add(job)
            checkpoint = uow.checkpoints.get_or_create(command.source_id, region)
            cursor = checkpoint.cursor_for(start, end)
            if cursor is None and checkpoint.last_cursor is not None:
                logger.info(
                    f"Checkpoint cursor of {command.source_id}/{region} belongs to window "
                    f"{checkpoint.window_start}..{checkpoint.window_end}, reading {start}..{end} from the start"
                )
            uow.commit()
            job_id = job.job_id

        try:
            outcome = _pull_batches(uow, job_id, source, command.source_id, region, start, end, cursor, lease)
            if outcome is None and sink is not None:
                _push(uow, job_id, sink, region, push_lease)
            if outcome is None:
                with uow:
                    job = uow.sync_jobs.get(job_id)
                    if not job.is_terminal:
                        job.complete()
                    uow.commit()
        except Exception as e:
            logger.exception(f"Unexpected error in pull job {job_id}")
            _fail_job(uow, job_id, f"unexpected error: {e}")
            raise
    finally:
        lease.release()
        if push_lease is not None:
            push_lease.release()

    if sink is not None:
        result = _job_summary(uow, job_id, PULL_COUNTS, push=PUSH_COUNTS)
    else:
        result = _job_summary(uow, job_id, PULL_COUNTS)
    logger.info(f"Pull job {job_id} finished: {result['status']}")
    return result


def _pull_batches(uow, job_id, source, source_id, region, start, end, cursor, lease):
    """Returns None when every batch was persisted, or the reason the job failed."""
    window = PullWindow(start=start, end=end, region=region)
    today = date.today()
    destination = config.get_case_destination_system()
    reportable = config.get_reportable_test_types()

    while True:
        lost = _renew_lease(uow, job_id, lease)
        if lost:
            return lost
        with uow:
            uow.sync_jobs.get(job_id).transition(SyncJobState.PULLING)
            uow.commit()

        try:
            batch = with_retry(source.pull, cursor, window)
        except AdapterUnavailable as e:
            logger.error(f"Pull job {job_id} failed, {source_id} unavailable: {e}")
            _fail_job(uow, job_id, str(e))
            return str(e)
        logger.info(f"Pull job {job_id}: {len(batch.records)} records from {source_id}")

        # The pull may have outlasted the lease TTL; never persist without it.
        lost = _renew_lease(uow, job_id, lease)
        if lost:
            return lost

        # Cancellation is honoured up to here; a started persist runs to completion.
        if lease.cancel_requested():
            logger.info(f"Pull job {job_id} cancelled before persisting")
            _fail_job(uow, job_id, "cancelled")
            return "cancelled"

        with uow:
            job = uow.sync_jobs.get(job_id)
            job.transition(SyncJobState.DEDUPLICATING)
            samples, counts = _deduplicate(uow, source_id, region, batch.records, job, today)

            job.transition(SyncJobState.PERSISTING)
            cases_created = 0
            for sample in samples:
                uow.samples.add(sample)
                if promote_to_case(sample, uow, destination, reportable) is not None:
                    cases_created += 1
            uow.session.flush()

            checkpoint = uow.checkpoints.get_or_create(source_id, region)
            checkpoint.advance(batch.next_cursor, model.utcnow(), start, end)
            job.record(casesCreated=cases_created, **counts)
            uow.commit()
            logger.info(
                f"Pull job {job_id}: persisted {len(samples)} samples, "
                f"{cases_created} new cases, checkpoint at {checkpoint.last_cursor}"
            )

        cursor = batch.next_cursor
        if not batch.has_more:
            return None


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def _batched(items, size):
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


def _push(uow: AbstractUnitOfWork, job_id: str, sink, region: str, lease=None) -> None:
    if sink.record_kind == "vector":
        _push_vector_records(uow, job_id, sink, region, lease)
    else:
        _push_cases(uow, job_id, sink, region, lease)


def _push_cases(uow: AbstractUnitOfWork, job_id: str, sink, region: str, lease=None) -> None:
    destination = sink.destination_system
    with uow:
        job = uow.sync_jobs.get(job_id)
        job.transition(SyncJobState.PUSHING)
        pending = uow.cases.list(region, [SubmissionStatus.PENDING], destination)
        case_ids = [c.case_id for c in pending if not c.withdrawn]
        awaiting_retry = len([
            c for c in uow.cases.list(region, [SubmissionStatus.FAILED], destination) if not c.withdrawn
        ])
        job.record(submitted=0, accepted=0, rejected=0, duplicate=0, failed=0,
                   awaitingRetry=awaiting_retry, withdrawn=len(pending) - len(case_ids))
        uow.commit()
    logger.info(f"Push job {job_id}: {len(case_ids)} pending cases for {destination}/{region}")

    batches = _batched(case_ids, config.get_push_batch_size())
    delay = config.get_push_batch_delay_seconds()
    for index, ids in enumerate(batches):
        if index and delay:
            time.sleep(delay)
        unsent = sum(len(b) for b in batches[index:])
        if _renew_lease(uow, job_id, lease, failed=unsent):
            return

        with uow:
            cases = [uow.cases.get(case_id) for case_id in ids]
            # end the transaction with a commit so the cases stay loaded once detached
            uow.commit()

        try:
            results = with_retry(sink.push, cases)
        except AdapterUnavailable as e:
            # Nothing in this or later batches was advanced.
            logger.error(f"Push job {job_id}: {destination} unavailable, {unsent} cases left pending: {e}")
            _fail_job(uow, job_id, str(e), failed=unsent)
            return

        by_key = {r.record_key: r for r in results}
        tally = dict(submitted=0, accepted=0, rejected=0, duplicate=0, failed=0)
        with uow:
            job = uow.sync_jobs.get(job_id)
            job.transition(SyncJobState.SUBMITTING)
            for case_id in ids:
                case = uow.cases.get(case_id)
                answer = by_key.get(case.sample_id)
                if answer is None:
                    logger.warning(f"{destination} returned no result for case {case_id}")
                    tally["failed"] += 1
                    continue
                case.apply(answer.status, answer.reason)
                tally["submitted"] += 1
                tally[answer.status.value] += 1
                if answer.status == SubmissionOutcome.REJECTED:
                    logger.warning(f"Case {case_id} rejected by {destination}: {answer.reason}")
            job.record(**tally)
            job.transition(SyncJobState.PUSHING)
            uow.commit()
        logger.info(f"Push job {job_id}: batch {index + 1}/{len(batches)} {tally}")


def _push_vector_records(uow: AbstractUnitOfWork, job_id: str, sink, region: str, lease=None) -> None:
    destination = sink.destination_system
    with uow:
        job = uow.sync_jobs.get(job_id)
        job.transition(SyncJobState.PUSHING)
        records = uow.vector_records.list_unsubmitted(region, destination)
        awaiting_retry = len(uow.vector_records.list_rejected(region, destination))
        job.record(submitted=0, accepted=0, rejected=0, duplicate=0, failed=0,
                   awaitingRetry=awaiting_retry)
        uow.commit()
    logger.info(f"Push job {job_id}: {len(records)} vector records for {destination}/{region}")

    batches = _batched(records, config.get_push_batch_size())
    delay = config.get_push_batch_delay_seconds()
    for index, batch in enumerate(batches):
        if index and delay:
            time.sleep(delay)
        unsent = sum(len(b) for b in batches[index:])
        if _renew_lease(uow, job_id, lease, failed=unsent):
            return
        try:
            results = with_retry(sink.push, batch)
        except AdapterUnavailable as e:
            logger.error(f"Push job {job_id}: {destination} unavailable: {e}")
            _fail_job(uow, job_id, str(e), failed=unsent)
            return

        by_key = {r.record_key: r for r in results}
        tally = dict(submitted=0, accepted=0, rejected=0, duplicate=0, failed=0)
        with uow:
            job = uow.sync_jobs.get(job_id)
            job.transition(SyncJobState.SUBMITTING)
            for record in batch:
                answer = by_key.get(record.record_id)
                if answer is None:
                    tally["failed"] += 1
                    continue
                uow.vector_records.add_submission(
                    model.VectorSubmission(
                        record_id=record.record_id,
                        destination_system=destination,
                        week_ending=record.week_ending,
                        outcome=answer.status,
                        reason=answer.reason,
                    )
                )
                tally["submitted"] += 1
                tally[answer.status.value] += 1
                if answer.status == SubmissionOutcome.REJECTED:
                    logger.warning(f"Vector record {record.record_id} rejected by {destination}: {answer.reason}")
            job.record(**tally)
            job.transition(SyncJobState.PUSHING)
            uow.commit()


def run_push(command: commands.RunPush, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """
    Submit pending records of a region to a destination system.

    Cases go out in bounded batches; each per-case answer advances that case.
    If the destination becomes unavailable the remaining cases keep their
    status and the job is marked failed.
    """
    region = normalize_county(command.region)
    sink = uow.adapters.sink(command.destination_system)
    lease = uow.sync_locks.acquire(command.destination_system, region)
    logger.info(f"Processing RunPush for {command.destination_system}/{region}")

    try:
        with uow:
            job = model.SyncJob(
                kind="push",
                system_id=command.destination_system,
                region=region,
                requested_by=command.requested_by,
            )
            uow.sync_jobs.add(job)
            uow.commit()
            job_id = job.job_id

        try:
            _push(uow, job_id, sink, region, lease)
            with uow:
                job = uow.sync_jobs.get(job_id)
                if not job.is_terminal:
                    job.complete()
                uow.commit()
        except Exception as e:
            logger.exception(f"Unexpected error in push job {job_id}")
            _fail_job(uow, job_id, f"unexpected error: {e}")
            raise
    finally:
        lease.release()

    result = _job_summary(uow, job_id, PUSH_COUNTS + ("awaitingRetry", "withdrawn"))
    logger.info(f"Push job {job_id} finished: {result}")
    return result


def acknowledge_submissions(
    command: commands.AcknowledgeSubmissions, uow: AbstractUnitOfWork
) -> Dict[str, Any]:
    """Advance submitted cases the destination reports as acknowledged."""
    region = normalize_county(command.region)
    sink = uow.adapters.sink(command.destination_system)
    lease = uow.sync_locks.acquire(command.destination_system, region)

    try:
        with uow:
            job = model.SyncJob(
                kind="acknowledge",
                system_id=command.destination_system,
                region=region,
                requested_by=command.requested_by,
            )
            job.transition(SyncJobState.PUSHING)
            uow.sync_jobs.add(job)
            submitted = {
                c.sample_id: c.case_id
                for c in uow.cases.list(region, [SubmissionStatus.SUBMITTED], command.destination_system)
            }
            job.record(checked=len(submitted), acknowledged=0)
            uow.commit()
            job_id = job.job_id

        try:
            acknowledged = with_retry(sink.acknowledged, list(submitted))
        except AdapterUnavailable as e:
            logger.error(f"Acknowledgement poll of {command.destination_system} failed: {e}")
            _fail_job(uow, job_id, str(e))
        else:
            with uow:
                job = uow.sync_jobs.get(job_id)
                for sample_id in acknowledged:
                    case_id = submitted.get(sample_id)
                    if case_id is None:
                        continue
                    uow.cases.get(case_id).acknowledge()
                    job.record(acknowledged=1)
                job.complete()
                uow.commit()
    finally:
        lease.release()

    return _job_summary(uow, job_id, ("checked", "acknowledged"))


def retry_case(command: commands.RetryCase, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """Manual retry: a failed case goes back to pending for the next push."""
    with uow:
        case = uow.cases.get(command.case_id)
        if case is None:
            raise CaseNotFound(f"Case {command.case_id} not found")
        case.retry(requested_by=command.requested_by)
        uow.commit()
        logger.info(f"Case {case.case_id} reset to pending by {command.requested_by}")
        return views.case_to_dict(case)


def retry_vector_record(
    command: commands.RetryVectorRecord, uow: AbstractUnitOfWork
) -> Dict[str, Any]:
    """Manual retry: a rejected vector record is queued for the next push."""
    with uow:
        record = uow.vector_records.get(command.record_id)
        if record is None:
            raise VectorRecordNotFound(f"Vector record {command.record_id} not found")
        latest = uow.vector_records.latest_submission(record.record_id, command.destination_system)
        if latest is None:
            raise model.InvalidStatusTransition(
                f"Vector record {record.record_id} was never sent to {command.destination_system}"
            )
        retry = uow.vector_records.add_submission(
            model.VectorSubmission.retry_request(latest, requested_by=command.requested_by)
        )
        uow.commit()
    logger.info(
        f"Vector record {record.record_id} queued for {command.destination_system} "
        f"by {command.requested_by}"
    )
    _write_audit(
        uow,
        "VECTOR_RETRY",
        command.requested_by,
        "vector_record",
        record.record_id,
        {"destinationSystem": command.destination_system, "previousReason": latest.reason},
    )
    return {
        "recordId": record.record_id,
        "destinationSystem": command.destination_system,
        "queuedAt": retry.submitted_at.isoformat(),
    }


def cancel_sync(command: commands.CancelSync, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    region = normalize_county(command.region)
    requested = uow.sync_locks.request_cancel(command.source_id, region)
    logger.info(
        f"Cancel of {command.source_id}/{region} by {command.requested_by}: "
        f"{'requested' if requested else 'no job running'}"
    )
    return {"sourceId": command.source_id, "region": region, "cancelRequested": requested}


def check_source_connection(
    command: commands.CheckSourceConnection, uow: AbstractUnitOfWork
) -> Dict[str, Any]:
    check = uow.adapters.source(command.source_id).check_connection()
    return {"success": check.success, "message": check.message, "tables": list(check.tables)}


# ---------------------------------------------------------------------------
# Vector ingestion
# ---------------------------------------------------------------------------


def ingest_vector_records(
    command: commands.IngestVectorRecords, uow: AbstractUnitOfWork
) -> Dict[str, Any]:
    """Validate and store a week of trapping results; duplicates are skipped."""
    county = normalize_county(command.county)
    week_ending = parse_date(command.week_ending)
    region_codes = config.get_region_codes()
    today = date.today()

    stored, duplicates = 0, 0
    quarantined = []
    seen = set()
    with uow:
        for index, raw in enumerate(command.species_data):
            row = dict(raw, county=county, weekEnding=week_ending)
            try:
                record = validate_vector_record(row, today=today, region_codes=region_codes)
            except ValidationError as e:
                logger.warning(f"Quarantined vector row {index} for {county}: {e}")
                quarantined.append({"recordId": str(index), "reason": str(e)})
                continue
            if record.record_id in seen or uow.vector_records.get(record.record_id) is not None:
                duplicates += 1
                continue
            seen.add(record.record_id)
            uow.vector_records.add(record)
            stored += 1
        uow.commit()

    logger.info(
        f"Ingested vector data for {county} week ending {week_ending}: "
        f"{stored} stored, {duplicates} duplicates, {len(quarantined)} quarantined"
    )
    return {
        "received": len(command.species_data),
        "recordsStored": stored,
        "duplicates": duplicates,
        "quarantined": len(quarantined),
        "quarantinedRecords": quarantined,
    }


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def report_window(week_ending: date, report_type: model.ReportType):
    """Inclusive collection-date window covered by a report."""
    if report_type == model.ReportType.WEEKLY:
        return week_ending - timedelta(days=6), week_ending
    months = 1 if report_type == model.ReportType.MONTHLY else 3
    return analytics.months_back(week_ending, months) + timedelta(days=1), week_ending


def _render_document(report: model.Report, summary: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "title": f"{report.county} County Vector Surveillance Report",
        "reportId": report.id,
        "reportType": report.report_type.value,
        "weekEnding": report.week_ending.isoformat(),
        "window": {
            "start": report.window_start.isoformat(),
            "end": report.window_end.isoformat(),
        },
        "generatedAt": report.generated_at.isoformat(),
        "generatedBy": report.generated_by,
        "summary": summary["analytics"],
        "speciesBreakdown": summary["analytics"]["speciesBreakdown"],
        "positiveSamples": summary["positiveSamples"],
        "caseCounts": summary["caseCounts"],
    }


def generate_report(command: commands.GenerateReport, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """
    Compose analytics and sync status into a new Report.

    Every call creates a new report; earlier ones are never touched. The
    rendered document is stored before the report row, so a report is
    complete the moment it exists.
    """
    county = normalize_county(command.county)
    week_ending = parse_date(command.week_ending)
    report_type = model.ReportType(str(command.report_type).lower())
    start, end = report_window(week_ending, report_type)
    logger.info(f"Generating {report_type.value} report for {county} week ending {week_ending}")

    with uow:
        samples = uow.samples.list_in_window(start, end, county)
        vectors = uow.vector_records.list_in_window(start, end, county)
        snapshot = analytics.compute_summary(samples, vectors, start, end, county)
        summary = {
            "analytics": snapshot,
            "caseCounts": uow.cases.count_by_status(county),
            "syncStatus": [views.job_to_dict(job) for job in uow.sync_jobs.latest(county)],
            "positiveSamples": [
                {
                    "sampleId": s.sample_id,
                    "testType": s.test_type,
                    "collectionDate": s.collection_date.isoformat(),
                    "location": s.location_name,
                    "species": s.species,
                }
                for s in samples
                if s.is_positive()
            ],
        }
        report = model.Report(
            county=county,
            week_ending=week_ending,
            report_type=report_type,
            generated_by=command.requested_by or "system",
            window_start=start,
            window_end=end,
            summary=summary,
        )

        object_key = f"reports/{county}/{week_ending.isoformat()}/{report.id}.json"
        try:
            report.file_path = uow.documents.put_json(object_key, _render_document(report, summary))
        except Exception:
            logger.exception(f"Rendering report {report.id} failed, storing it without a document")
            report.file_path = None

        report.generate()
        uow.reports.add(report)
        uow.commit()
        logger.info(f"Report {report.id} generated for {county}")
        return views.report_to_dict(report)


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------

_AUDIT_INSERT = text("""
    INSERT INTO audit_log (action, actor, entity, entity_id, details, created_at)
    VALUES (:action, :actor, :entity, :entity_id, :details, :created_at)
""").bindparams(
    bindparam("details", type_=JSON),
    bindparam("created_at", type_=UTCDateTime),
)

PUSH_AUDIT_ACTIONS = {
    "nedss": "NEDSS_AUTOMATION",
    "arbonet": "ARBORET_UPLOAD",
}


def _write_audit(uow: AbstractUnitOfWork, action, actor, entity, entity_id, details):
    with uow:
        uow.session.execute(
            _AUDIT_INSERT,
            dict(
                action=action,
                actor=actor,
                entity=entity,
                entity_id=entity_id,
                details=details,
                created_at=model.utcnow(),
            ),
        )
        uow.commit()


def _sync_audit_action(event) -> str:
    system = event.system_id.upper()
    if event.kind == "pull":
        return f"{system}_SYNC"
    if event.kind == "push":
        return PUSH_AUDIT_ACTIONS.get(event.system_id, f"{system}_PUSH")
    return f"{system}_{event.kind.upper()}"


def record_sync_audit(event, uow: AbstractUnitOfWork):
    """Append an audit_log row for a finished (completed or failed) sync job."""
    details = {"region": event.region, "counts": event.counts}
    if isinstance(event, events.SyncFailed):
        details["error"] = event.error
    _write_audit(
        uow,
        _sync_audit_action(event),
        event.requested_by,
        "sync_job",
        event.job_id,
        details,
    )
    logger.info(f"Audit entry written for sync job {event.job_id}")


def record_case_retry_audit(event, uow: AbstractUnitOfWork):
    if event.new_status != SubmissionStatus.PENDING.value:
        return
    _write_audit(
        uow,
        "CASE_RETRY",
        event.requested_by,
        "case",
        event.case_id,
        {"sampleId": event.sample_id, "previousStatus": event.previous_status},
    )


def record_report_audit(event, uow: AbstractUnitOfWork):
    _write_audit(
        uow,
        "COUNTY_REPORT_GENERATED",
        event.generated_by,
        "report",
        event.report_id,
        {
            "county": event.county,
            "weekEnding": event.week_ending.isoformat(),
            "reportType": event.report_type,
            "filePath": event.file_path,
        },
    )


def _publish(channel: str, event):
    try:
        redis_adapter.publish(channel, event)
    except Exception as e:
        logger.error(f"Failed to publish {type(event).__name__} to {channel}: {e}")
        # Don't re-raise - external failures shouldn't break the flow


def publish_case_event(event, uow: AbstractUnitOfWork):
    _publish(redis_adapter.CASES_CHANNEL, event)


def publish_sync_event(event, uow: AbstractUnitOfWork):
    _publish(redis_adapter.SYNC_CHANNEL, event)


def publish_report_event(event, uow: AbstractUnitOfWork):
    _publish(redis_adapter.REPORTS_CHANNEL, event)
