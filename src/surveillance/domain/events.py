"""Domain events for the surveillance sync core."""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

from shared.domain.commands import Event


@dataclass
class CasePromoted(Event):
    """A positive sample met the reporting criteria and became a case."""
    case_id: str
    sample_id: str
    county: str
    test_type: str
    destination_system: str


@dataclass
class CaseStatusChanged(Event):
    case_id: str
    sample_id: str
    previous_status: str
    new_status: str
    reason: Optional[str] = None
    requested_by: Optional[str] = None


@dataclass
class CaseWithdrawn(Event):
    """A newer sample revision no longer meets the reporting criteria."""
    case_id: str
    sample_id: str
    sample_revision: int
    reason: str


@dataclass
class SyncCompleted(Event):
    job_id: str
    kind: str  # pull | push | acknowledge
    system_id: str
    region: str
    counts: Dict[str, Any] = field(default_factory=dict)
    requested_by: Optional[str] = None


@dataclass
class SyncFailed(Event):
    job_id: str
    kind: str
    system_id: str
    region: str
    error: str
    counts: Dict[str, Any] = field(default_factory=dict)
    requested_by: Optional[str] = None


@dataclass
class ReportGenerated(Event):
    report_id: str
    county: str
    week_ending: date
    report_type: str
    generated_by: str
    file_path: Optional[str] = None
