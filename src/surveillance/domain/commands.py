"""Commands for the surveillance sync core."""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from shared.domain.commands import Command


@dataclass
class RunPull(Command):
    """Pull new records for a (source, region) pair inside a collection window."""
    source_id: str
    region: str
    start_date: date
    end_date: date
    requested_by: Optional[str] = None
    push_to: Optional[str] = None  # optionally continue into a push


@dataclass
class RunPush(Command):
    """Submit pending records of a region to a destination system."""
    destination_system: str
    region: str
    requested_by: Optional[str] = None


@dataclass
class AcknowledgeSubmissions(Command):
    """Ask the destination which submitted cases it has acknowledged."""
    destination_system: str
    region: str
    requested_by: Optional[str] = None


@dataclass
class RetryCase(Command):
    """Manual retry of a failed case (failed -> pending)."""
    case_id: str
    requested_by: Optional[str] = None


@dataclass
class RetryVectorRecord(Command):
    """Manual retry of a vector record the destination rejected."""
    record_id: str
    destination_system: str = "arbonet"
    requested_by: Optional[str] = None


@dataclass
class CancelSync(Command):
    source_id: str
    region: str
    requested_by: Optional[str] = None


@dataclass
class CheckSourceConnection(Command):
    source_id: str


@dataclass
class IngestVectorRecords(Command):
    """Record a week of trapping results for a county (ArboNET upload payload)."""
    county: str
    week_ending: date
    species_data: List[Dict[str, Any]] = field(default_factory=list)
    requested_by: Optional[str] = None


@dataclass
class GenerateReport(Command):
    county: str
    week_ending: date
    report_type: str
    requested_by: str
