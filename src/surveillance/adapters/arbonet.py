"""CDC ArboNET sink adapter - uploads weekly vector surveillance CSV files."""

import csv
import io
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

import requests

import config
from surveillance.adapters.base import AbstractSinkAdapter, AdapterUnavailable, SubmissionResult
from surveillance.domain.model import SubmissionOutcome, VectorRecord

logger = logging.getLogger(__name__)

ARBONET_HEADERS = [
    "COUNTY",
    "WEEK_ENDING",
    "SPECIES",
    "COUNT",
    "LOCATION",
    "LATITUDE",
    "LONGITUDE",
    "TRAP_TYPE",
    "COLLECTION_DATE",
]

SPECIES_CODES = {
    "culex pipiens": "CULEX_PIPIENS",
    "culex quinquefasciatus": "CULEX_QUINQUEFASCIATUS",
    "culex tarsalis": "CULEX_TARSALIS",
    "aedes aegypti": "AEDES_AEGYPTI",
    "aedes albopictus": "AEDES_ALBOPICTUS",
    "aedes vexans": "AEDES_VEXANS",
    "anopheles quadrimaculatus": "ANOPHELES_QUADRIMACULATUS",
    "anopheles punctipennis": "ANOPHELES_PUNCTIPENNIS",
    "psorophora columbiae": "PSOROPHORA_COLUMBIAE",
    "psorophora ferox": "PSOROPHORA_FEROX",
    "culiseta inornata": "CULISETA_INORNATA",
    "coquillettidia perturbans": "COQUILLETTIDIA_PERTURBANS",
}


def standardize_species(species: str) -> str:
    """ArboNET species code, e.g. 'Culex pipiens' -> 'CULEX_PIPIENS'."""
    name = " ".join(species.split())
    return SPECIES_CODES.get(name.lower(), name.upper().replace(" ", "_"))


def format_date(value) -> str:
    return value.strftime("%m/%d/%Y")


def build_csv(records: Sequence[VectorRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(ARBONET_HEADERS)
    for record in records:
        writer.writerow([
            record.county,
            format_date(record.week_ending),
            standardize_species(record.species),
            record.count,
            record.location_name or "",
            "" if record.latitude is None else record.latitude,
            "" if record.longitude is None else record.longitude,
            record.trap_type,
            format_date(record.collection_date),
        ])
    return buffer.getvalue()


class ArboretAdapter(AbstractSinkAdapter):
    """Uploads vector records, one CSV per (county, week ending)."""

    record_kind = "vector"

    def __init__(
        self,
        base_url: Optional[str] = None,
        credentials: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
        destination_system: str = "arbonet",
    ):
        settings = config.get_arbonet_config()
        self.destination_system = destination_system
        self.base_url = (base_url or settings["base_url"]).rstrip("/")
        creds = credentials or settings
        self.auth = (creds["username"], creds["password"])
        self.api_key = creds.get("api_key", "")
        self.timeout = timeout or settings["timeout"]
        self.session = session or requests.Session()

    def push(self, records: Sequence[VectorRecord]) -> List[SubmissionResult]:
        groups = OrderedDict()
        for record in records:
            groups.setdefault((record.county, record.week_ending), []).append(record)

        results = []
        for (county, week_ending), group in groups.items():
            results.extend(self._upload(county, week_ending, group))
        return results

    def _upload(self, county, week_ending, records) -> List[SubmissionResult]:
        url = f"{self.base_url}/api/v1/uploads"
        payload = build_csv(records)
        logger.info(
            f"Uploading {len(records)} vector records for {county} week ending {week_ending} to ArboNET"
        )
        try:
            response = self.session.post(
                url,
                auth=self.auth,
                headers={"X-API-Key": self.api_key},
                data={"countyCode": county, "weekEnding": week_ending.isoformat()},
                files={"file": (f"arbonet_{county}_{week_ending.isoformat()}.csv", payload, "text/csv")},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise AdapterUnavailable(f"ArboNET timeout: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error uploading to ArboNET: {e}")
            raise AdapterUnavailable(f"ArboNET network error: {e}") from e

        if response.status_code in (401, 403) or response.status_code >= 500:
            raise AdapterUnavailable(f"ArboNET returned HTTP {response.status_code}")
        if response.status_code >= 400:
            reason = response.text or f"HTTP {response.status_code}"
            return [
                SubmissionResult(record_key=r.record_id, status=SubmissionOutcome.REJECTED, reason=reason)
                for r in records
            ]

        try:
            body = response.json()
            # ArboNET reports problems by 1-based data row number
            errors = {int(e["row"]): e.get("message") for e in body.get("errors", [])}
            duplicates = {int(row) for row in body.get("duplicates", [])}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AdapterUnavailable(f"Unreadable ArboNET response: {e}") from e

        results = []
        for row, record in enumerate(records, start=1):
            if row in errors:
                results.append(SubmissionResult(record.record_id, SubmissionOutcome.REJECTED, errors[row]))
            elif row in duplicates:
                results.append(SubmissionResult(record.record_id, SubmissionOutcome.DUPLICATE))
            else:
                results.append(SubmissionResult(record.record_id, SubmissionOutcome.ACCEPTED))
        return results
