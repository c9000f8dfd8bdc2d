"""
Aggregations over canonical storage.

Everything here is a pure function of the samples and vector records handed
in; views.py does the reading, so callers always see what storage holds at
read time.
"""
import calendar
import csv
import io
import json
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from surveillance.domain.model import Sample, VectorRecord
from surveillance.domain.validation import parse_date

DEFAULT_RANGE_DAYS = 30

_DAYS_PATTERN = re.compile(r"^(\d+)d$")


@dataclass
class ExportPayload:
    content: bytes
    media_type: str
    filename: str


def months_back(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def resolve_time_range(
    time_range: Optional[str] = None,
    start_date: Any = None,
    end_date: Any = None,
    today: Optional[date] = None,
) -> Tuple[date, date]:
    """
    Turn a named range or explicit dates into an inclusive (start, end) pair.

    Named ranges count back from today: week, month, quarter, year or "<n>d".
    Without either, the last 30 days are used.

    Raises:
        ValueError: If the range name or dates cannot be understood
    """
    today = today or date.today()
    if start_date or end_date:
        end = parse_date(end_date) if end_date else today
        start = parse_date(start_date) if start_date else end - timedelta(days=DEFAULT_RANGE_DAYS)
        if start > end:
            raise ValueError(f"startDate {start.isoformat()} is after endDate {end.isoformat()}")
        return start, end

    name = (time_range or f"{DEFAULT_RANGE_DAYS}d").strip().lower()
    if name == "week":
        return today - timedelta(days=7), today
    if name == "month":
        return months_back(today, 1), today
    if name == "quarter":
        return months_back(today, 3), today
    if name == "year":
        return months_back(today, 12), today
    match = _DAYS_PATTERN.match(name)
    if match:
        return today - timedelta(days=int(match.group(1))), today
    raise ValueError(f"unknown time range {time_range!r}")


def positivity_rate(positive: int, total: int) -> float:
    if total == 0:
        return 0.0
    return positive / total


def species_breakdown(records: Iterable[VectorRecord]) -> List[Dict[str, Any]]:
    """
    Vector counts per species with percentages to two decimals.

    Percentages are apportioned by largest remainder so that they add up to
    exactly 100 whenever any specimen was counted.
    """
    counts = OrderedDict()  # type: Dict[str, int]
    for record in records:
        counts[record.species] = counts.get(record.species, 0) + record.count
    total = sum(counts.values())
    if not counts:
        return []
    if total == 0:
        return [
            {"species": species, "count": 0, "percentage": 0.0}
            for species in sorted(counts)
        ]

    # work in hundredths of a percent
    exact = {species: count * 10000 / total for species, count in counts.items()}
    units = {species: int(value) for species, value in exact.items()}
    remaining = 10000 - sum(units.values())
    by_remainder = sorted(counts, key=lambda s: (-(exact[s] - units[s]), s))
    for species in by_remainder[:remaining]:
        units[species] += 1

    rows = [
        {"species": species, "count": count, "percentage": units[species] / 100}
        for species, count in counts.items()
    ]
    rows.sort(key=lambda row: (-row["count"], row["species"]))
    return rows


def geographic_distribution(samples: Iterable[Sample]) -> List[Dict[str, Any]]:
    groups = OrderedDict()
    for sample in samples:
        key = sample.location_name or sample.county
        group = groups.setdefault(
            key,
            {"location": key, "county": sample.county, "count": 0, "positiveCount": 0, "coords": []},
        )
        group["count"] += 1
        if sample.is_positive():
            group["positiveCount"] += 1
        if sample.location is not None:
            group["coords"].append(sample.location)

    rows = []
    for group in groups.values():
        coords = group.pop("coords")
        if coords:
            group["latitude"] = round(sum(c[0] for c in coords) / len(coords), 6)
            group["longitude"] = round(sum(c[1] for c in coords) / len(coords), 6)
        else:
            group["latitude"] = None
            group["longitude"] = None
        rows.append(group)
    rows.sort(key=lambda row: (-row["count"], row["location"]))
    return rows


def temporal_trends(samples: Iterable[Sample], start: date, end: date) -> List[Dict[str, Any]]:
    """One bucket per calendar day in [start, end], empty days included."""
    buckets = OrderedDict()
    day = start
    while day <= end:
        buckets[day] = {"date": day.isoformat(), "count": 0, "positiveCount": 0}
        day += timedelta(days=1)
    for sample in samples:
        bucket = buckets.get(sample.collection_date)
        if bucket is None:
            continue
        bucket["count"] += 1
        if sample.is_positive():
            bucket["positiveCount"] += 1
    return list(buckets.values())


def compute_summary(
    samples: List[Sample],
    vector_records: List[VectorRecord],
    start: date,
    end: date,
    county: Optional[str] = None,
) -> Dict[str, Any]:
    """AnalyticsSnapshot for the given window and (optional) county."""
    total = len(samples)
    positive = sum(1 for s in samples if s.is_positive())
    return {
        "countyCode": county,
        "startDate": start.isoformat(),
        "endDate": end.isoformat(),
        "totalSamples": total,
        "positiveCases": positive,
        "positivityRate": positivity_rate(positive, total),
        "speciesBreakdown": species_breakdown(vector_records),
        "geographicDistribution": geographic_distribution(samples),
        "temporalTrends": temporal_trends(samples, start, end),
    }


CSV_COLUMNS = ["section", "label", "count", "positive_count", "percentage", "latitude", "longitude"]


def _snapshot_csv(snapshot: Dict[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    writer.writerow(["summary", "totalSamples", snapshot["totalSamples"], "", "", "", ""])
    writer.writerow(["summary", "positiveCases", snapshot["positiveCases"], "", "", "", ""])
    writer.writerow(
        ["summary", "positivityRate", "", "", round(snapshot["positivityRate"] * 100, 2), "", ""]
    )
    for row in snapshot["speciesBreakdown"]:
        writer.writerow(["species", row["species"], row["count"], "", row["percentage"], "", ""])
    for row in snapshot["geographicDistribution"]:
        writer.writerow([
            "location",
            row["location"],
            row["count"],
            row["positiveCount"],
            "",
            "" if row["latitude"] is None else row["latitude"],
            "" if row["longitude"] is None else row["longitude"],
        ])
    for row in snapshot["temporalTrends"]:
        writer.writerow(["day", row["date"], row["count"], row["positiveCount"], "", "", ""])
    return buffer.getvalue()


def export_snapshot(snapshot: Dict[str, Any], export_format: str = "json") -> ExportPayload:
    """
    Serialize a snapshot for download.

    Raises:
        ValueError: For a format other than json or csv
    """
    export_format = (export_format or "json").lower()
    stem = "surveillance-analytics-{}-{}-{}".format(
        snapshot["startDate"], snapshot["endDate"], snapshot.get("countyCode") or "all"
    )
    if export_format == "json":
        document = {
            "metadata": {
                "exportDate": datetime.now(timezone.utc).isoformat(),
                "countyCode": snapshot.get("countyCode"),
                "startDate": snapshot["startDate"],
                "endDate": snapshot["endDate"],
                "format": "json",
            },
            "data": snapshot,
        }
        return ExportPayload(
            content=json.dumps(document, indent=2).encode("utf-8"),
            media_type="application/json",
            filename=f"{stem}.json",
        )
    if export_format == "csv":
        return ExportPayload(
            content=_snapshot_csv(snapshot).encode("utf-8"),
            media_type="text/csv",
            filename=f"{stem}.csv",
        )
    raise ValueError(f"unsupported export format {export_format!r}")
