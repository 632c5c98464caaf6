"""
Shared test fixtures.

Writes a small survey data directory and builds a database from it.

Footprints (2 degree squares unless noted), ids in visiting order:

    0  A  survey A  centred on (45, 40)     base cell 0
    1  C  survey A  centred on (0, 0)       base cell 4, crosses lon 0
    2  B  survey B  centred on (135, 40)    base cell 1
    3  D  survey C  4 degrees on (90, 60)   straddles base cells 0 and 1

Plus two malformed features and one unparsable collection file.
"""

import json

import pytest

from skymosaic.config import EngineSettings, reset_settings, set_settings
from skymosaic.query.builder import build
from skymosaic.query.database import Database
from skymosaic.query.models import ServerInfo, SurveyConfig

SURVEY_CONFIG = {
    "fields": [
        {"id": "survey", "name": "Survey", "type": "string", "widget": "tags"},
        {"id": "exptime", "name": "Exposure", "type": "number", "source": "EXPTIME"},
        {"id": "obs_date", "type": "date", "formatFunc": "date(x)"},
        {"id": "flagged", "type": "boolean"},
        {"id": "exptime_h", "type": "number", "computed": "exptime / 3600"},
    ],
    "watermarkImage": "logo.png",
}


def square(lon, lat, size=2.0):
    half = size / 2
    return {
        "type": "Polygon",
        "coordinates": [[
            [lon - half, lat - half],
            [lon + half, lat - half],
            [lon + half, lat + half],
            [lon - half, lat + half],
            [lon - half, lat - half],
        ]],
    }


def feature(geometry, **properties):
    return {"type": "Feature", "geometry": geometry, "properties": properties}


def collection(*features):
    return {"type": "FeatureCollection", "features": list(features)}


def make_server_info(data_revision="data-r1", **kwargs) -> ServerInfo:
    return ServerInfo(
        version="test", data_revision=data_revision, code_revision="code-r1", **kwargs
    )


def write_survey(data_dir):
    """Populate ``data_dir`` with the sample survey."""
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "survey_config.json").write_text(json.dumps(SURVEY_CONFIG))

    (data_dir / "a_survey.geojson").write_text(json.dumps(collection(
        feature(square(45, 40), survey="A", EXPTIME=100, obs_date="2021-01-15", flagged=False),
        feature(square(0, 0), survey="A", EXPTIME=50, obs_date="2022-06-01T12:00:00Z"),
        feature({"type": "Point", "coordinates": [10, 10]}, survey="A", EXPTIME=1),
    )))

    (data_dir / "b_survey").mkdir(exist_ok=True)
    (data_dir / "b_survey" / "extra.geojson").write_text(json.dumps(collection(
        feature(square(135, 40), survey="B", EXPTIME="300", obs_date="2021-03-10", flagged=True),
        feature(square(90, 60, 4.0), survey="C", EXPTIME=200, obs_date=1609459200000,
                flagged="false"),
        feature(square(200, -20), survey="B", EXPTIME="long", obs_date="2021-01-01"),
    )))

    (data_dir / "broken.json").write_text("{not json")
    return data_dir


@pytest.fixture(scope="session")
def settings():
    return EngineSettings()


@pytest.fixture(autouse=True)
def setup_settings(settings):
    """Set the test settings as the global settings for all tests."""
    set_settings(settings)
    yield
    reset_settings()


@pytest.fixture(scope="session")
def survey_data_dir(tmp_path_factory):
    return write_survey(tmp_path_factory.mktemp("survey") / "data")


@pytest.fixture(scope="session")
def built_db_path(survey_data_dir, tmp_path_factory, settings):
    """Build the sample survey once per session."""
    path = tmp_path_factory.mktemp("db") / "survey.duckdb"
    build(str(survey_data_dir), str(path), make_server_info(), settings=settings)
    return str(path)


@pytest.fixture(scope="session")
def database(built_db_path):
    db = Database.open(built_db_path)
    yield db
    db.close()


@pytest.fixture
def survey_config():
    return SurveyConfig.model_validate(SURVEY_CONFIG)
