"""Texas NEDSS sink adapter - submits case batches to the state disease-reporting system."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

import config
from surveillance.adapters.base import AbstractSinkAdapter, AdapterUnavailable, SubmissionResult
from surveillance.domain.model import Case, SubmissionOutcome

logger = logging.getLogger(__name__)


class NedssAdapter(AbstractSinkAdapter):
    """HTTP client for the NEDSS case submission endpoint."""

    record_kind = "case"

    def __init__(
        self,
        base_url: Optional[str] = None,
        credentials: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
        destination_system: str = "nedss",
    ):
        settings = config.get_nedss_config()
        self.destination_system = destination_system
        self.base_url = (base_url or settings["base_url"]).rstrip("/")
        creds = credentials or settings
        self.auth = (creds["username"], creds["password"])
        self.timeout = timeout or settings["timeout"]
        self.session = session or requests.Session()

    @staticmethod
    def to_payload(case: Case) -> Dict[str, Any]:
        return {
            "patientId": case.patient_id,
            "sampleId": case.sample_id,
            "testType": case.test_type,
            "result": "Positive",
            "collectionDate": case.collection_date.isoformat(),
            "countyCode": case.county,
        }

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, auth=self.auth, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"NEDSS request to {url} timed out: {e}")
            raise AdapterUnavailable(f"NEDSS timeout: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error talking to NEDSS at {url}: {e}")
            raise AdapterUnavailable(f"NEDSS network error: {e}") from e

        if response.status_code in (401, 403) or response.status_code >= 500:
            logger.error(f"NEDSS returned HTTP {response.status_code} for {url}")
            raise AdapterUnavailable(f"NEDSS returned HTTP {response.status_code}")
        return response

    def push(self, records: Sequence[Case]) -> List[SubmissionResult]:
        if not records:
            return []
        logger.info(f"Submitting {len(records)} cases to NEDSS")
        response = self._request(
            "POST",
            "/api/v1/cases/batch",
            json={"cases": [self.to_payload(case) for case in records]},
        )

        if response.status_code in (400, 422):
            reason = response.text or f"HTTP {response.status_code}"
            logger.warning(f"NEDSS rejected the whole batch: {reason}")
            return [
                SubmissionResult(record_key=c.sample_id, status=SubmissionOutcome.REJECTED, reason=reason)
                for c in records
            ]

        try:
            answers = {item["sampleId"]: item for item in response.json()["results"]}
        except (ValueError, KeyError, TypeError) as e:
            raise AdapterUnavailable(f"Unreadable NEDSS response: {e}") from e

        results = []
        for case in records:
            answer = answers.get(case.sample_id)
            if answer is None:
                raise AdapterUnavailable(f"NEDSS returned no result for sample {case.sample_id}")
            try:
                status = SubmissionOutcome(str(answer.get("status", "")).lower())
            except ValueError:
                status = SubmissionOutcome.REJECTED
                answer = {**answer, "reason": f"unknown NEDSS status {answer.get('status')!r}"}
            results.append(
                SubmissionResult(record_key=case.sample_id, status=status, reason=answer.get("reason"))
            )
        return results

    def acknowledged(self, record_keys: Sequence[str]) -> List[str]:
        if not record_keys:
            return []
        response = self._request(
            "GET",
            "/api/v1/cases/acknowledgements",
            params={"sampleIds": ",".join(record_keys)},
        )
        try:
            acknowledged = set(response.json()["acknowledged"])
        except (ValueError, KeyError, TypeError) as e:
            raise AdapterUnavailable(f"Unreadable NEDSS response: {e}") from e
        return [key for key in record_keys if key in acknowledged]
