"""Unit tests for raw record validation."""
import pytest
from datetime import date, datetime

from surveillance.domain.model import SampleResult
from surveillance.domain.validation import (
    ValidationError,
    epi_week_ending,
    normalize_county,
    normalize_result,
    parse_date,
    validate_sample,
    validate_vector_record,
    vector_record_key,
)

TODAY = date(2024, 6, 10)
REGIONS = {"TARRANT", "DALLAS"}


def raw_sample(**overrides):
    raw = {
        "sampleId": "LW-00001",
        "revision": 1,
        "patientId": "P-12345",
        "testType": "WNV PCR",
        "result": "Positive",
        "collectionDate": "2024-06-03",
        "county": "Tarrant County",
        "location": "Trinity Park",
        "latitude": 32.7555,
        "longitude": -97.3535,
    }
    raw.update(overrides)
    return raw


def raw_vector(**overrides):
    raw = {
        "species": "Culex quinquefasciatus",
        "count": 42,
        "trapType": "Gravid",
        "collectionDate": "2024-06-05",
        "county": "TARRANT",
        "location": "Trinity Park",
    }
    raw.update(overrides)
    return raw


class TestParseDate:
    def test_iso_and_us_formats(self):
        assert parse_date("2024-06-03") == date(2024, 6, 3)
        assert parse_date("06/03/2024") == date(2024, 6, 3)
        assert parse_date("2024-06-03T14:30:00Z") == date(2024, 6, 3)

    def test_datetime_is_truncated(self):
        assert parse_date(datetime(2024, 6, 3, 23, 59)) == date(2024, 6, 3)

    @pytest.mark.parametrize("value", ["", "yesterday", None, 20240603])
    def test_unparseable_values(self, value):
        with pytest.raises(ValueError):
            parse_date(value)


class TestNormalizeResult:
    def test_free_text_synonyms(self):
        assert normalize_result("DETECTED") == (SampleResult.POSITIVE, None)
        assert normalize_result(" Not Detected ") == (SampleResult.NEGATIVE, None)

    def test_unknown_result_is_indeterminate_with_warning(self):
        result, warning = normalize_result("see comment")
        assert result == SampleResult.INDETERMINATE
        assert "see comment" in warning


def test_normalize_county_strips_suffix_and_case():
    assert normalize_county("tarrant county", REGIONS) == "TARRANT"
    with pytest.raises(ValidationError) as exc:
        normalize_county("Harris", REGIONS)
    assert exc.value.field == "county"


def test_epi_week_ending_is_saturday():
    assert epi_week_ending(date(2024, 6, 3)) == date(2024, 6, 8)
    assert epi_week_ending(date(2024, 6, 8)) == date(2024, 6, 8)
    assert epi_week_ending(date(2024, 6, 9)) == date(2024, 6, 15)


class TestValidateSample:
    def test_valid_record(self):
        sample = validate_sample(raw_sample(), "labware", today=TODAY, region_codes=REGIONS)

        assert sample.sample_id == "LW-00001"
        assert sample.county == "TARRANT"
        assert sample.result == SampleResult.POSITIVE
        assert sample.collection_date == date(2024, 6, 3)
        assert sample.location == (32.7555, -97.3535)
        assert sample.warnings == []

    def test_unparseable_collection_date(self):
        with pytest.raises(ValidationError) as exc:
            validate_sample(
                raw_sample(collectionDate="not-a-date"), "labware", today=TODAY, region_codes=REGIONS
            )
        assert exc.value.field == "collectionDate"

    def test_future_collection_date(self):
        with pytest.raises(ValidationError) as exc:
            validate_sample(
                raw_sample(collectionDate="2024-07-01"), "labware", today=TODAY, region_codes=REGIONS
            )
        assert "future" in exc.value.reason

    def test_unknown_county(self):
        with pytest.raises(ValidationError):
            validate_sample(raw_sample(county="Harris"), "labware", today=TODAY, region_codes=REGIONS)

    def test_missing_sample_id(self):
        with pytest.raises(ValidationError) as exc:
            validate_sample(raw_sample(sampleId=" "), "labware", today=TODAY, region_codes=REGIONS)
        assert exc.value.field == "sampleId"

    def test_unknown_result_records_warning(self):
        sample = validate_sample(
            raw_sample(result="pending review"), "labware", today=TODAY, region_codes=REGIONS
        )
        assert sample.result == SampleResult.INDETERMINATE
        assert len(sample.warnings) == 1

    def test_out_of_range_coordinates_are_dropped(self):
        sample = validate_sample(
            raw_sample(latitude=132.0), "labware", today=TODAY, region_codes=REGIONS
        )
        assert sample.location is None
        assert "out-of-range" in sample.warnings[0]


class TestValidateVectorRecord:
    def test_week_ending_derived_from_collection_date(self):
        record = validate_vector_record(raw_vector(), today=TODAY, region_codes=REGIONS)

        assert record.week_ending == date(2024, 6, 8)
        assert record.count == 42
        assert len(record.record_id) == 32

    def test_collection_date_outside_given_week(self):
        with pytest.raises(ValidationError) as exc:
            validate_vector_record(
                raw_vector(weekEnding="2024-06-15"), today=TODAY, region_codes=REGIONS
            )
        assert exc.value.field == "weekEnding"

    def test_negative_count(self):
        with pytest.raises(ValidationError):
            validate_vector_record(raw_vector(count=-1), today=TODAY, region_codes=REGIONS)

    def test_same_trap_event_has_same_key(self):
        first = validate_vector_record(raw_vector(), today=TODAY, region_codes=REGIONS)
        again = validate_vector_record(
            raw_vector(species="CULEX QUINQUEFASCIATUS"), today=TODAY, region_codes=REGIONS
        )
        other = validate_vector_record(raw_vector(count=43), today=TODAY, region_codes=REGIONS)

        assert first.record_id == again.record_id
        assert first.record_id != other.record_id


def test_vector_record_key_ignores_location_case():
    args = ("TARRANT", date(2024, 6, 8), "Culex tarsalis", "CDC Light", date(2024, 6, 5))
    assert vector_record_key(*args, "Trap 1", None, None, 3) == vector_record_key(
        *args, "TRAP 1", None, None, 3
    )
