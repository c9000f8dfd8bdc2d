"""
Capability interfaces for external systems.

A source adapter can `pull` raw records; a sink adapter can `push` canonical
records. Adapters only translate protocols: they never deduplicate or apply
business validation, and every failure to reach the external system surfaces
as AdapterUnavailable.
"""
import abc
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

import config
from surveillance.domain.model import SubmissionOutcome

logger = logging.getLogger(__name__)


class AdapterUnavailable(Exception):
    """The external system could not be reached (network, credentials, timeout)."""
    pass


class UnknownAdapter(Exception):
    """No adapter is configured for the requested system id."""
    pass


@dataclass(frozen=True)
class PullWindow:
    """Collection-date window of a pull, optionally narrowed to one region."""
    start: date
    end: date
    region: Optional[str] = None


@dataclass
class PullBatch:
    records: List[Dict[str, Any]]
    next_cursor: Optional[str]
    has_more: bool = False


@dataclass(frozen=True)
class SubmissionResult:
    """Per-record answer of a sink."""
    record_key: str
    status: SubmissionOutcome
    reason: Optional[str] = None


@dataclass
class ConnectionCheck:
    success: bool
    message: str
    tables: List[str] = field(default_factory=list)


class AbstractSourceAdapter(abc.ABC):
    source_id: str = "unknown"

    @abc.abstractmethod
    def pull(self, since_cursor: Optional[str], window: PullWindow) -> PullBatch:
        """
        Fetch raw records newer than since_cursor inside the window.

        Pulling the same cursor and window again returns the same records, or
        a superset when the source received late data.

        Raises:
            AdapterUnavailable: If the source cannot be reached
        """
        raise NotImplementedError

    def check_connection(self) -> ConnectionCheck:
        return ConnectionCheck(success=True, message="no connection check available")


class AbstractSinkAdapter(abc.ABC):
    destination_system: str = "unknown"
    # "case" sinks receive Cases, "vector" sinks receive VectorRecords
    record_kind: str = "case"

    @abc.abstractmethod
    def push(self, records: Sequence[Any]) -> List[SubmissionResult]:
        """
        Submit records, one SubmissionResult per record.

        Re-pushing a record the destination already acknowledged must yield
        DUPLICATE, never a second ACCEPTED.

        Raises:
            AdapterUnavailable: If the destination cannot be reached
        """
        raise NotImplementedError

    def acknowledged(self, record_keys: Sequence[str]) -> List[str]:
        """Keys among record_keys that the destination has acknowledged."""
        return []


def with_retry(fn, *args, policy: Optional[dict] = None, **kwargs):
    """Call fn, retrying AdapterUnavailable with exponential backoff per policy."""
    policy = policy or config.get_retry_policy()
    retrying = Retrying(
        retry=retry_if_exception_type(AdapterUnavailable),
        stop=stop_after_attempt(max(1, int(policy["attempts"]))),
        wait=wait_exponential(
            multiplier=policy["multiplier"],
            min=policy["wait_min"],
            max=policy["wait_max"],
        ),
        before_sleep=lambda state: logger.warning(
            "Adapter call %s failed (attempt %s): %s",
            getattr(fn, "__qualname__", fn),
            state.attempt_number,
            state.outcome.exception(),
        ),
        reraise=True,
    )
    return retrying(fn, *args, **kwargs)
