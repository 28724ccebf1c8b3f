"""
Shared fixtures: raw record builders, a small canonical frame and an API client
pointed at a temporary CSV export.
"""

import os
import sys
from typing import Any, Dict, List

import pandas as pd
import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

from incidents.data import normalize_records, raw_frame_from_records  # noqa: E402


def raw_record(**overrides: Any) -> Dict[str, Any]:
    """A raw incident row as the upstream CSV delivers it (strings everywhere)."""
    base = {
        "uid": "100",
        "nces_school_id": "480000100001",
        "school_name": "Sample High School",
        "nces_district_id": "4800001",
        "district_name": "Sample ISD",
        "date": "2024-03-15",
        "school_year": "2023-2024",
        "year": "2024",
        "time": "10:30 AM",
        "day_of_week": "Friday",
        "city": "Houston",
        "state": "TX",
        "school_type": "public",
        "enrollment": "1200",
        "killed": "0",
        "injured": "0",
        "casualties": "0",
        "shooting_type": "accidental",
        "resource_officer": "false",
        "lat": "29.76",
        "long": "-95.36",
        "low_grade": "9",
        "high_grade": "12",
        "county": "Harris County",
    }
    base.update(overrides)
    return base


SAMPLE_ROWS: List[Dict[str, Any]] = [
    raw_record(
        uid="1", date="2024-01-15", school_name="Lincoln High", city="Houston", state="TX",
        killed="1", injured="2", casualties="3", shooting_type="targeted", resource_officer="true",
        nces_district_id="D1", district_name="Houston ISD",
    ),
    raw_record(
        uid="2", date="2024-01-20", school_name="Oak Elementary", city="Austin", state="TX",
        low_grade="K", high_grade="5", lat="30.27", long="-97.74",
        nces_district_id="D2", district_name="Austin ISD",
    ),
    raw_record(
        uid="3", date="2024-02-03", school_name="Pine Middle", city="Fresno", state="CA",
        low_grade="6", high_grade="8", injured="4", casualties="4", shooting_type="indiscriminate",
        resource_officer="yes", lat="36.74", long="-119.78", nces_district_id="D3", district_name="Fresno USD",
    ),
    raw_record(
        uid="4", date="2024-03-11", school_name="State University", city="Los Angeles", state="CA",
        school_type="public university", low_grade="", high_grade="", injured="12", casualties="12",
        shooting_type="targeted", lat="0", long="0", nces_district_id="D4", district_name="LA District",
    ),
    raw_record(
        uid="5", date="not-a-date", school_name="Harbor High", city="Buffalo", state="NY",
        school_type="private", injured="1", casualties="1", resource_officer="", lat="", long="",
        nces_district_id="D5", district_name="Buffalo Schools",
    ),
    raw_record(
        uid="6", date="2024-03-28", school_name="Lincoln High", city="Houston", state="TX",
        killed="2", injured="10", casualties="12", shooting_type="targeted", resource_officer="1",
        nces_district_id="D1", district_name="Houston ISD",
    ),
]


@pytest.fixture
def make_raw():
    return raw_record


@pytest.fixture
def sample_rows() -> List[Dict[str, Any]]:
    return [dict(r) for r in SAMPLE_ROWS]


@pytest.fixture
def raw_frame(sample_rows) -> pd.DataFrame:
    return raw_frame_from_records(sample_rows)


@pytest.fixture
def records(raw_frame) -> pd.DataFrame:
    return normalize_records(raw_frame)


@pytest.fixture
def csv_path(tmp_path, sample_rows):
    path = tmp_path / "incidents.csv"
    pd.DataFrame(sample_rows).to_csv(path, index=False)
    return path


@pytest.fixture
def client(monkeypatch, csv_path):
    """FastAPI TestClient reading the sample CSV, with no upstream configured."""
    monkeypatch.setenv("INCIDENTS_DATA_PATH", str(csv_path))
    monkeypatch.setenv("INCIDENTS_API_URL", "")
    from starlette.testclient import TestClient

    from api.main import app

    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
