"""Unit tests for analytics aggregations."""
import csv
import io
import json
import pytest
from datetime import date

from surveillance import analytics
from surveillance.domain.model import Sample, SampleResult, VectorRecord

TODAY = date(2024, 6, 10)


def sample(sample_id, day, result=SampleResult.NEGATIVE, location="Trap 1", lat=None, lon=None):
    return Sample(
        source_id="labware",
        sample_id=sample_id,
        patient_id="P-1",
        test_type="WNV PCR",
        result=result,
        collection_date=day,
        county="TARRANT",
        location_name=location,
        latitude=lat,
        longitude=lon,
    )


def vector(species, count):
    return VectorRecord(
        record_id=f"{species}-{count}",
        county="TARRANT",
        week_ending=date(2024, 6, 8),
        species=species,
        count=count,
        trap_type="Gravid",
        collection_date=date(2024, 6, 5),
    )


def test_positivity_rate_is_zero_without_samples():
    assert analytics.positivity_rate(0, 0) == 0.0
    assert analytics.positivity_rate(3, 25) == pytest.approx(0.12)


class TestSpeciesBreakdown:
    def test_percentages_sum_to_one_hundred(self):
        rows = analytics.species_breakdown(
            [vector("Culex tarsalis", 1), vector("Aedes albopictus", 1), vector("Culex pipiens", 1)]
        )

        assert sum(row["percentage"] for row in rows) == pytest.approx(100.0)
        assert sorted(row["percentage"] for row in rows) == [33.33, 33.33, 33.34]

    def test_counts_are_summed_per_species_and_sorted(self):
        rows = analytics.species_breakdown(
            [vector("Culex tarsalis", 5), vector("Aedes albopictus", 20), vector("Culex tarsalis", 10)]
        )

        assert [(r["species"], r["count"]) for r in rows] == [
            ("Aedes albopictus", 20),
            ("Culex tarsalis", 15),
        ]
        assert rows[0]["percentage"] == pytest.approx(57.14)
        assert rows[1]["percentage"] == pytest.approx(42.86)

    def test_empty_and_zero_counts(self):
        assert analytics.species_breakdown([]) == []
        assert analytics.species_breakdown([vector("Culex tarsalis", 0)]) == [
            {"species": "Culex tarsalis", "count": 0, "percentage": 0.0}
        ]


def test_temporal_trends_include_zero_count_days():
    trends = analytics.temporal_trends(
        [
            sample("A", date(2024, 6, 1), SampleResult.POSITIVE),
            sample("B", date(2024, 6, 3)),
            sample("C", date(2024, 6, 3)),
            sample("D", date(2024, 5, 31)),
        ],
        date(2024, 6, 1),
        date(2024, 6, 7),
    )

    assert [t["date"] for t in trends] == [f"2024-06-0{d}" for d in range(1, 8)]
    assert [t["count"] for t in trends] == [1, 0, 2, 0, 0, 0, 0]
    assert trends[0]["positiveCount"] == 1


def test_geographic_distribution_averages_coordinates():
    rows = analytics.geographic_distribution(
        [
            sample("A", date(2024, 6, 1), SampleResult.POSITIVE, "Trinity Park", 32.0, -97.0),
            sample("B", date(2024, 6, 2), SampleResult.NEGATIVE, "Trinity Park", 33.0, -98.0),
            sample("C", date(2024, 6, 2), SampleResult.NEGATIVE, None),
        ]
    )

    assert rows[0] == {
        "location": "Trinity Park",
        "county": "TARRANT",
        "count": 2,
        "positiveCount": 1,
        "latitude": 32.5,
        "longitude": -97.5,
    }
    assert rows[1]["location"] == "TARRANT"
    assert rows[1]["latitude"] is None


def test_compute_summary():
    samples = [sample(f"S{i}", date(2024, 6, 2), SampleResult.POSITIVE if i < 3 else SampleResult.NEGATIVE)
               for i in range(25)]

    snapshot = analytics.compute_summary(
        samples, [vector("Culex tarsalis", 4)], date(2024, 6, 1), date(2024, 6, 8), "TARRANT"
    )

    assert snapshot["totalSamples"] == 25
    assert snapshot["positiveCases"] == 3
    assert snapshot["positivityRate"] == pytest.approx(0.12)
    assert snapshot["speciesBreakdown"][0]["percentage"] == 100.0
    assert len(snapshot["temporalTrends"]) == 8


class TestResolveTimeRange:
    def test_defaults_to_last_thirty_days(self):
        assert analytics.resolve_time_range(today=TODAY) == (date(2024, 5, 11), TODAY)

    @pytest.mark.parametrize(
        "name,start",
        [
            ("week", date(2024, 6, 3)),
            ("month", date(2024, 5, 10)),
            ("quarter", date(2024, 3, 10)),
            ("year", date(2023, 6, 10)),
            ("7d", date(2024, 6, 3)),
            ("90d", date(2024, 3, 12)),
        ],
    )
    def test_named_ranges(self, name, start):
        assert analytics.resolve_time_range(name, today=TODAY) == (start, TODAY)

    def test_explicit_dates_win(self):
        assert analytics.resolve_time_range(
            "year", "2024-06-01", "2024-06-08", today=TODAY
        ) == (date(2024, 6, 1), date(2024, 6, 8))

    def test_unknown_range(self):
        with pytest.raises(ValueError):
            analytics.resolve_time_range("fortnight", today=TODAY)

    def test_start_after_end(self):
        with pytest.raises(ValueError):
            analytics.resolve_time_range(None, date(2024, 6, 9), date(2024, 6, 1), today=TODAY)


def test_months_back_clamps_to_month_end():
    assert analytics.months_back(date(2024, 5, 31), 3) == date(2024, 2, 29)


class TestExportSnapshot:
    @pytest.fixture
    def snapshot(self):
        return analytics.compute_summary(
            [sample("A", date(2024, 6, 1), SampleResult.POSITIVE, "Trinity Park", 32.0, -97.0)],
            [vector("Culex tarsalis", 4)],
            date(2024, 6, 1),
            date(2024, 6, 2),
            "TARRANT",
        )

    def test_json_export(self, snapshot):
        payload = analytics.export_snapshot(snapshot, "json")

        assert payload.media_type == "application/json"
        assert payload.filename.endswith(".json")
        document = json.loads(payload.content)
        assert document["metadata"]["countyCode"] == "TARRANT"
        assert document["data"]["totalSamples"] == 1

    def test_csv_export(self, snapshot):
        payload = analytics.export_snapshot(snapshot, "CSV")

        assert payload.media_type == "text/csv"
        rows = list(csv.reader(io.StringIO(payload.content.decode("utf-8"))))
        assert rows[0] == analytics.CSV_COLUMNS
        assert ["summary", "totalSamples", "1", "", "", "", ""] in rows
        assert ["species", "Culex tarsalis", "4", "", "100.0", "", ""] in rows
        assert ["day", "2024-06-02", "0", "0", "", "", ""] in rows

    def test_unsupported_format(self, snapshot):
        with pytest.raises(ValueError):
            analytics.export_snapshot(snapshot, "xlsx")
