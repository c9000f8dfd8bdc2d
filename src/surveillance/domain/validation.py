"""
Validation of raw records into the canonical model.

Pure functions: no storage, no logging side effects beyond the warnings
attached to the returned entity.
"""
import hashlib
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, Optional

import config
from surveillance.domain.model import Sample, SampleResult, VectorRecord


class ValidationError(Exception):
    """A raw record cannot be turned into a canonical entity."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


# Free-text result strings seen from laboratory systems.
RESULT_SYNONYMS = {
    "positive": SampleResult.POSITIVE,
    "pos": SampleResult.POSITIVE,
    "detected": SampleResult.POSITIVE,
    "reactive": SampleResult.POSITIVE,
    "+": SampleResult.POSITIVE,
    "negative": SampleResult.NEGATIVE,
    "neg": SampleResult.NEGATIVE,
    "not detected": SampleResult.NEGATIVE,
    "non-reactive": SampleResult.NEGATIVE,
    "nonreactive": SampleResult.NEGATIVE,
    "-": SampleResult.NEGATIVE,
    "indeterminate": SampleResult.INDETERMINATE,
    "inconclusive": SampleResult.INDETERMINATE,
    "equivocal": SampleResult.INDETERMINATE,
}

DATE_FORMATS = ("%m/%d/%Y", "%Y%m%d")


def parse_date(value: Any) -> date:
    """Parse a date from a date, datetime, ISO string or MM/DD/YYYY string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not a date: {value!r}")
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"not a date: {value!r}")


def normalize_result(value: Any):
    """Map a free-text result to the enum. Returns (result, warning or None)."""
    if isinstance(value, SampleResult):
        return value, None
    text = str(value or "").strip().lower()
    if text in RESULT_SYNONYMS:
        return RESULT_SYNONYMS[text], None
    return SampleResult.INDETERMINATE, f"unrecognised result {value!r} recorded as indeterminate"


def normalize_county(value: Any, region_codes: Optional[Iterable[str]] = None) -> str:
    codes = region_codes if region_codes is not None else config.get_region_codes()
    text = str(value or "").strip().upper()
    if text.endswith(" COUNTY"):
        text = text[: -len(" COUNTY")].strip()
    if text not in codes:
        raise ValidationError("county", f"unknown region code {value!r}")
    return text


def epi_week_ending(day: date) -> date:
    """Saturday that closes the epidemiological (MMWR) week containing day."""
    return day + timedelta(days=(5 - day.weekday()) % 7)


def _collection_date(raw: Dict[str, Any], today: date) -> date:
    try:
        collected = parse_date(raw.get("collectionDate"))
    except ValueError as e:
        raise ValidationError("collectionDate", str(e)) from e
    if collected > today:
        raise ValidationError("collectionDate", f"{collected.isoformat()} is in the future")
    return collected


def _required(raw: Dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(key, "missing")
    return str(value).strip()


def _coordinates(raw: Dict[str, Any], warnings: list):
    lat, lon = raw.get("latitude"), raw.get("longitude")
    if lat in (None, "") or lon in (None, ""):
        return None, None
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        warnings.append(f"dropped unparseable coordinates ({lat!r}, {lon!r})")
        return None, None
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        warnings.append(f"dropped out-of-range coordinates ({lat}, {lon})")
        return None, None
    return lat, lon


def validate_sample(
    raw: Dict[str, Any],
    source_id: str,
    today: Optional[date] = None,
    region_codes: Optional[Iterable[str]] = None,
) -> Sample:
    """Turn a raw laboratory record into a Sample or raise ValidationError."""
    today = today or date.today()
    warnings = []

    sample_id = _required(raw, "sampleId")
    patient_id = _required(raw, "patientId")
    test_type = _required(raw, "testType")
    collected = _collection_date(raw, today)
    county = normalize_county(raw.get("county"), region_codes)

    result, warning = normalize_result(raw.get("result"))
    if warning:
        warnings.append(warning)

    try:
        revision = int(raw.get("revision") or 1)
    except (TypeError, ValueError) as e:
        raise ValidationError("revision", f"not an integer: {raw.get('revision')!r}") from e
    if revision < 1:
        raise ValidationError("revision", "must be 1 or greater")

    latitude, longitude = _coordinates(raw, warnings)

    return Sample(
        source_id=source_id,
        sample_id=sample_id,
        patient_id=patient_id,
        test_type=test_type,
        result=result,
        collection_date=collected,
        county=county,
        revision=revision,
        latitude=latitude,
        longitude=longitude,
        location_name=(raw.get("location") or None),
        species=(raw.get("species") or None),
        warnings=warnings,
    )


def vector_record_key(county, week_ending, species, trap_type, collection_date,
                      location_name, latitude, longitude, count) -> str:
    parts = [
        county,
        week_ending.isoformat(),
        species.lower(),
        trap_type.lower(),
        collection_date.isoformat(),
        (location_name or "").lower(),
        "" if latitude is None else f"{latitude:.5f}",
        "" if longitude is None else f"{longitude:.5f}",
        str(count),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]


def validate_vector_record(
    raw: Dict[str, Any],
    today: Optional[date] = None,
    region_codes: Optional[Iterable[str]] = None,
) -> VectorRecord:
    """Turn a raw trapping record into a VectorRecord or raise ValidationError."""
    today = today or date.today()
    warnings = []

    species = _required(raw, "species")
    trap_type = _required(raw, "trapType")
    collected = _collection_date(raw, today)
    county = normalize_county(raw.get("county"), region_codes)

    try:
        count = int(raw.get("count"))
    except (TypeError, ValueError) as e:
        raise ValidationError("count", f"not an integer: {raw.get('count')!r}") from e
    if count < 0:
        raise ValidationError("count", "must not be negative")

    if raw.get("weekEnding") not in (None, ""):
        try:
            week_ending = parse_date(raw.get("weekEnding"))
        except ValueError as e:
            raise ValidationError("weekEnding", str(e)) from e
        if not (week_ending - timedelta(days=6) <= collected <= week_ending):
            raise ValidationError(
                "weekEnding",
                f"collection date {collected.isoformat()} is outside the week ending "
                f"{week_ending.isoformat()}",
            )
    else:
        week_ending = epi_week_ending(collected)

    latitude, longitude = _coordinates(raw, warnings)
    location_name = raw.get("location") or None

    return VectorRecord(
        record_id=vector_record_key(
            county, week_ending, species, trap_type, collected,
            location_name, latitude, longitude, count,
        ),
        county=county,
        week_ending=week_ending,
        species=species,
        count=count,
        trap_type=trap_type,
        collection_date=collected,
        location_name=location_name,
        latitude=latitude,
        longitude=longitude,
        warnings=warnings,
    )
