"""LabWare LIMS source adapter - pulls sample rows over the LIMS SQL Server protocol."""

import logging
from datetime import datetime, time, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    inspect,
    or_,
    select,
)
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

import config
from surveillance.adapters.base import (
    AbstractSourceAdapter,
    AdapterUnavailable,
    ConnectionCheck,
    PullBatch,
    PullWindow,
)

logger = logging.getLogger(__name__)

lims_metadata = MetaData()

# LabWare sample table as exposed to surveillance. SampleNumber is the LIMS
# row sequence; a revised result is a new row with the same SampleID.
lims_samples = Table(
    "Samples",
    lims_metadata,
    Column("SampleNumber", Integer, primary_key=True),
    Column("SampleID", String(255)),
    Column("Revision", Integer),
    Column("PatientID", String(255)),
    Column("TestType", String(255)),
    Column("Result", String(255)),
    Column("CollectionDate", DateTime),
    Column("County", String(64)),
    Column("Location", String(255)),
    Column("Latitude", Float),
    Column("Longitude", Float),
    Column("Species", String(255)),
)


def build_engine(connection: Dict[str, Any]):
    """Create an engine for the LIMS from {server, database, username, password, port}."""
    url = URL.create(
        "mssql+pymssql",
        username=connection["username"],
        password=connection["password"],
        host=connection["server"],
        port=connection.get("port") or 1433,
        database=connection["database"],
    )
    timeout = connection.get("timeout", 30)
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"login_timeout": timeout, "timeout": timeout},
    )


class LabwareAdapter(AbstractSourceAdapter):
    """Pull-style source reading the LabWare Samples table."""

    def __init__(
        self,
        connection: Optional[Dict[str, Any]] = None,
        engine=None,
        source_id: str = "labware",
        batch_size: Optional[int] = None,
    ):
        self.source_id = source_id
        self.connection = connection or config.get_labware_connection()
        self.batch_size = batch_size or config.get_pull_batch_size()
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            self._engine = build_engine(self.connection)
        return self._engine

    def pull(self, since_cursor: Optional[str], window: PullWindow) -> PullBatch:
        after = int(since_cursor) if since_cursor else 0
        query = (
            select(lims_samples)
            .where(lims_samples.c.SampleNumber > after)
            .where(lims_samples.c.CollectionDate >= datetime.combine(window.start, time.min))
            .where(
                lims_samples.c.CollectionDate
                < datetime.combine(window.end + timedelta(days=1), time.min)
            )
            .order_by(lims_samples.c.SampleNumber)
            .limit(self.batch_size + 1)
        )
        if window.region:
            county = func.upper(lims_samples.c.County)
            query = query.where(
                or_(county == window.region, county == f"{window.region} COUNTY")
            )

        logger.info(
            "Pulling LabWare samples after #%s for %s..%s region=%s",
            after, window.start, window.end, window.region,
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"LabWare pull failed: {e}")
            raise AdapterUnavailable(f"LabWare unavailable: {e}") from e

        has_more = len(rows) > self.batch_size
        rows = rows[: self.batch_size]
        next_cursor = str(rows[-1]["SampleNumber"]) if rows else since_cursor
        logger.info(f"Pulled {len(rows)} LabWare rows, next cursor {next_cursor}")
        return PullBatch(
            records=[self._to_raw(row) for row in rows],
            next_cursor=next_cursor,
            has_more=has_more,
        )

    @staticmethod
    def _to_raw(row) -> Dict[str, Any]:
        """Translate a LIMS row into the canonical raw record shape."""
        return {
            "sampleId": row["SampleID"],
            "revision": row["Revision"],
            "patientId": row["PatientID"],
            "testType": row["TestType"],
            "result": row["Result"],
            "collectionDate": row["CollectionDate"],
            "county": row["County"],
            "location": row["Location"],
            "latitude": row["Latitude"],
            "longitude": row["Longitude"],
            "species": row["Species"],
        }

    def check_connection(self) -> ConnectionCheck:
        """Connect with the configured credentials and list available tables."""
        try:
            tables = sorted(inspect(self.engine).get_table_names())
        except SQLAlchemyError as e:
            logger.error(f"LabWare connection error: {e}")
            return ConnectionCheck(success=False, message=f"Connection failed: {e}")
        return ConnectionCheck(
            success=True, message="LabWare connection successful", tables=tables
        )
