"""
Surveillance API - core-facing contract for sync, analytics and reports.
Following Cosmic Python pattern: thin API layer, commands go through the
message bus and reads go through views.

Authentication happens upstream; the caller identity arrives as the
X-Caller-Subject / X-Caller-Role headers set by the auth layer.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine

import config
from surveillance import views
from surveillance.adapters import orm
from surveillance.adapters.base import UnknownAdapter
from surveillance.adapters.sync_lock import ConcurrencyConflict
from surveillance.domain import commands
from surveillance.domain.model import InvalidStatusTransition
from surveillance.domain.validation import ValidationError
from surveillance.service_layer import messagebus
from surveillance.service_layer.handlers import CaseNotFound, VectorRecordNotFound
from surveillance.service_layer.unit_of_work import SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database and ORM mappers (Cosmic Python pattern)
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("Surveillance database initialized")
    yield


app = FastAPI(
    title="Surveillance Sync API",
    description="Laboratory and vector surveillance sync, analytics and reporting",
    version="1.0.0",
    lifespan=lifespan,
)


def get_uow():
    return SqlAlchemyUnitOfWork()


@dataclass
class Caller:
    subject: Optional[str]
    role: Optional[str]


def get_caller(
    x_caller_subject: Optional[str] = Header(None),
    x_caller_role: Optional[str] = Header(None),
) -> Caller:
    return Caller(subject=x_caller_subject, role=x_caller_role)


# ---------- Request models ----------

class PullRequest(BaseModel):
    sourceId: str = "labware"
    region: str
    startDate: date
    endDate: date
    pushTo: Optional[str] = None


class PushRequest(BaseModel):
    destinationSystem: str
    region: str


class CancelRequest(BaseModel):
    sourceId: str = "labware"
    region: str


class ConnectionCheckRequest(BaseModel):
    sourceId: str = "labware"


class VectorIngestRequest(BaseModel):
    countyCode: str
    weekEnding: date
    speciesData: List[Dict[str, Any]]

    model_config = {
        "json_schema_extra": {
            "example": {
                "countyCode": "TARRANT",
                "weekEnding": "2024-06-08",
                "speciesData": [
                    {
                        "species": "Culex quinquefasciatus",
                        "count": 42,
                        "trapType": "Gravid",
                        "collectionDate": "2024-06-05",
                        "location": "Trinity Park",
                        "latitude": 32.7555,
                        "longitude": -97.3535,
                    }
                ],
            }
        }
    }


class GenerateReportRequest(BaseModel):
    countyCode: str
    weekEnding: date
    reportType: str = "weekly"


# ---------- Helpers ----------

def _dispatch(command, uow):
    """Run a command through the bus and map core errors to HTTP status codes."""
    try:
        return messagebus.handle(command, uow)[0]
    except ConcurrencyConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (CaseNotFound, VectorRecordNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnknownAdapter as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "reason": e.reason})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _read(view, *args, **kwargs):
    try:
        return view(*args, **kwargs)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "reason": e.reason})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _job_response(result):
    # the job could not reach its source or sink
    if result.get("status") == "failed":
        return JSONResponse(status_code=503, content=result)
    return result


# ---------- Endpoints ----------

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "surveillance-sync-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/v1/sync/pull")
def sync_pull(request: PullRequest, uow=Depends(get_uow), caller: Caller = Depends(get_caller)):
    """
    Pull lab records for (source, region) inside the collection window.

    Returns samplesProcessed, newSamples, updatedSamples, duplicates,
    quarantined and casesCreated. 409 while another pull for the same pair
    is running, 503 if the source could not be reached.
    """
    logger.info(f"Pull requested by {caller.subject} for {request.sourceId}/{request.region}")
    result = _dispatch(
        commands.RunPull(
            source_id=request.sourceId,
            region=request.region,
            start_date=request.startDate,
            end_date=request.endDate,
            requested_by=caller.subject,
            push_to=request.pushTo,
        ),
        uow,
    )
    return _job_response(result)


@app.post("/api/v1/sync/push")
def sync_push(request: PushRequest, uow=Depends(get_uow), caller: Caller = Depends(get_caller)):
    """Submit pending records of a region; returns submitted, accepted, rejected and failed."""
    result = _dispatch(
        commands.RunPush(
            destination_system=request.destinationSystem,
            region=request.region,
            requested_by=caller.subject,
        ),
        uow,
    )
    return _job_response(result)


@app.post("/api/v1/sync/acknowledge")
def sync_acknowledge(request: PushRequest, uow=Depends(get_uow), caller: Caller = Depends(get_caller)):
    result = _dispatch(
        commands.AcknowledgeSubmissions(
            destination_system=request.destinationSystem,
            region=request.region,
            requested_by=caller.subject,
        ),
        uow,
    )
    return _job_response(result)


@app.post("/api/v1/sync/cancel")
def sync_cancel(request: CancelRequest, uow=Depends(get_uow), caller: Caller = Depends(get_caller)):
    return _dispatch(
        commands.CancelSync(
            source_id=request.sourceId,
            region=request.region,
            requested_by=caller.subject,
        ),
        uow,
    )


@app.post("/api/v1/sync/check-connection")
def sync_check_connection(request: ConnectionCheckRequest, uow=Depends(get_uow)):
    """LabWare connection test: connects and lists the available tables."""
    return _dispatch(commands.CheckSourceConnection(source_id=request.sourceId), uow)


@app.get("/api/v1/sync/status")
def sync_status(region: Optional[str] = None, uow=Depends(get_uow)):
    return _read(views.sync_status, uow, region)


@app.get("/api/v1/cases")
def list_cases(
    region: Optional[str] = None,
    status: Optional[str] = None,
    destination_system: Optional[str] = Query(None, alias="destinationSystem"),
    uow=Depends(get_uow),
):
    cases = _read(views.list_cases, uow, region, status, destination_system)
    return {"total": len(cases), "cases": cases}


@app.post("/api/v1/cases/{case_id}/retry")
def retry_case(case_id: str, uow=Depends(get_uow), caller: Caller = Depends(get_caller)):
    """Manual retry of a failed case (failed -> pending)."""
    return _dispatch(commands.RetryCase(case_id=case_id, requested_by=caller.subject), uow)


@app.post("/api/v1/vector/ingest")
def ingest_vector_data(
    request: VectorIngestRequest, uow=Depends(get_uow), caller: Caller = Depends(get_caller)
):
    return _dispatch(
        commands.IngestVectorRecords(
            county=request.countyCode,
            week_ending=request.weekEnding,
            species_data=request.speciesData,
            requested_by=caller.subject,
        ),
        uow,
    )


@app.post("/api/v1/vector/{record_id}/retry")
def retry_vector_record(
    record_id: str,
    destination_system: str = Query("arbonet", alias="destinationSystem"),
    uow=Depends(get_uow),
    caller: Caller = Depends(get_caller),
):
    """Queue a rejected vector record for the next push."""
    return _dispatch(
        commands.RetryVectorRecord(
            record_id=record_id,
            destination_system=destination_system,
            requested_by=caller.subject,
        ),
        uow,
    )


@app.get("/api/v1/analytics/summary")
def analytics_summary(
    county_code: Optional[str] = Query(None, alias="countyCode"),
    time_range: Optional[str] = Query(None, alias="timeRange"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    uow=Depends(get_uow),
):
    return _read(views.analytics_summary, uow, county_code, time_range, start_date, end_date)


@app.get("/api/v1/analytics/export")
def analytics_export(
    export_format: str = Query("json", alias="format"),
    county_code: Optional[str] = Query(None, alias="countyCode"),
    time_range: Optional[str] = Query(None, alias="timeRange"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    uow=Depends(get_uow),
):
    payload = _read(
        views.analytics_export, uow, export_format, county_code, time_range, start_date, end_date
    )
    return Response(
        content=payload.content,
        media_type=payload.media_type,
        headers={"Content-Disposition": f'attachment; filename="{payload.filename}"'},
    )


@app.post("/api/v1/reports/generate")
def generate_report(
    request: GenerateReportRequest, uow=Depends(get_uow), caller: Caller = Depends(get_caller)
):
    return _dispatch(
        commands.GenerateReport(
            county=request.countyCode,
            week_ending=request.weekEnding,
            report_type=request.reportType,
            requested_by=caller.subject or "system",
        ),
        uow,
    )


@app.get("/api/v1/reports/history")
def report_history(
    county_code: Optional[str] = Query(None, alias="countyCode"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    uow=Depends(get_uow),
):
    return _read(views.report_history, uow, county_code, start_date, end_date, limit, offset)


@app.get("/api/v1/reports/{report_id}")
def get_report(report_id: str, uow=Depends(get_uow)):
    report = views.get_report(uow, report_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    return report


@app.get("/api/v1/audit")
def audit_log(entity: Optional[str] = None, limit: int = Query(100, ge=1, le=1000), uow=Depends(get_uow)):
    return {"entries": views.audit_entries(uow, entity, limit)}
