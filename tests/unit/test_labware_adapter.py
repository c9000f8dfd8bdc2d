"""Unit tests for the LabWare source adapter against a SQLite copy of the Samples table."""
import pytest
from datetime import date, datetime

from sqlalchemy import create_engine, insert

from surveillance.adapters.base import AdapterUnavailable, PullWindow
from surveillance.adapters.labware import LabwareAdapter, lims_metadata, lims_samples

WINDOW = PullWindow(start=date(2024, 6, 1), end=date(2024, 6, 8), region="TARRANT")


def lims_row(number, county="Tarrant County", collected=datetime(2024, 6, 3, 9, 30), **kwargs):
    row = {
        "SampleNumber": number,
        "SampleID": f"LW-{number:05d}",
        "Revision": 1,
        "PatientID": f"P-{number}",
        "TestType": "WNV PCR",
        "Result": "Negative",
        "CollectionDate": collected,
        "County": county,
        "Location": "Trinity Park",
        "Latitude": 32.7555,
        "Longitude": -97.3535,
        "Species": "Culex quinquefasciatus",
    }
    row.update(kwargs)
    return row


@pytest.fixture
def lims_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'labware.db'}")
    lims_metadata.create_all(engine)
    yield engine
    engine.dispose()


def load(engine, *rows):
    with engine.begin() as conn:
        conn.execute(insert(lims_samples), list(rows))


def test_pull_translates_rows_and_returns_cursor(lims_engine):
    load(lims_engine, lims_row(1, Result="Positive"), lims_row(2))
    adapter = LabwareAdapter(connection={}, engine=lims_engine, batch_size=10)

    batch = adapter.pull(None, WINDOW)

    assert batch.next_cursor == "2"
    assert batch.has_more is False
    assert batch.records[0] == {
        "sampleId": "LW-00001",
        "revision": 1,
        "patientId": "P-1",
        "testType": "WNV PCR",
        "result": "Positive",
        "collectionDate": datetime(2024, 6, 3, 9, 30),
        "county": "Tarrant County",
        "location": "Trinity Park",
        "latitude": 32.7555,
        "longitude": -97.3535,
        "species": "Culex quinquefasciatus",
    }


def test_pull_filters_window_and_region(lims_engine):
    load(
        lims_engine,
        lims_row(1),
        lims_row(2, county="DALLAS"),
        lims_row(3, collected=datetime(2024, 5, 31, 23, 59)),
        lims_row(4, collected=datetime(2024, 6, 8, 23, 59)),
        lims_row(5, collected=datetime(2024, 6, 9, 0, 0)),
        lims_row(6, county="tarrant"),
    )
    adapter = LabwareAdapter(connection={}, engine=lims_engine, batch_size=10)

    batch = adapter.pull(None, WINDOW)

    assert [r["sampleId"] for r in batch.records] == ["LW-00001", "LW-00004", "LW-00006"]


def test_pull_pages_from_cursor(lims_engine):
    load(lims_engine, *[lims_row(n) for n in range(1, 6)])
    adapter = LabwareAdapter(connection={}, engine=lims_engine, batch_size=2)

    first = adapter.pull(None, WINDOW)
    second = adapter.pull(first.next_cursor, WINDOW)
    last = adapter.pull(second.next_cursor, WINDOW)
    again = adapter.pull(None, WINDOW)

    assert [r["sampleId"] for r in first.records] == ["LW-00001", "LW-00002"]
    assert first.has_more is True
    assert [r["sampleId"] for r in second.records] == ["LW-00003", "LW-00004"]
    assert [r["sampleId"] for r in last.records] == ["LW-00005"]
    assert last.has_more is False
    assert again.records == first.records


def test_empty_pull_keeps_cursor(lims_engine):
    adapter = LabwareAdapter(connection={}, engine=lims_engine, batch_size=2)

    batch = adapter.pull("41", WINDOW)

    assert batch.records == []
    assert batch.next_cursor == "41"


def test_connection_failure_is_unavailable(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'labware.db'}")
    adapter = LabwareAdapter(connection={}, engine=engine, batch_size=2)

    with pytest.raises(AdapterUnavailable):
        adapter.pull(None, WINDOW)


def test_check_connection_lists_tables(lims_engine, tmp_path):
    assert LabwareAdapter(connection={}, engine=lims_engine).check_connection().tables == ["Samples"]

    broken = create_engine(f"sqlite:///{tmp_path / 'missing' / 'labware.db'}")
    check = LabwareAdapter(connection={}, engine=broken).check_connection()
    assert check.success is False
    assert check.message.startswith("Connection failed")
