"""Tests for the survey service facade."""

import asyncio
import json

import pytest

from conftest import make_server_info
from skymosaic.errors import EngineBusyError, IngestionError, NotFoundError, QueryError
from skymosaic.query.lifecycle import DatabaseState
from skymosaic.query.registry import InMemoryQueryRegistry
from skymosaic.query.tiles import TileGenerator
from skymosaic.service.survey import SurveyService

SURVEY_A = {"filter": {"op": "=", "field": "survey", "value": "A"}}
SURVEY_B = {"filter": {"op": "=", "field": "survey", "value": "B"}}


@pytest.fixture
def service(built_db_path, settings):
    svc = SurveyService.open(built_db_path, settings=settings)
    yield svc
    svc.close()


def tile_ids(payload: bytes) -> list[int]:
    return [f["properties"]["id"] for f in json.loads(payload)["features"]]


class TestStatus:
    def test_ready_after_open(self, service):
        assert service.status == "ready"

    def test_not_ready_before_start(self, settings):
        svc = SurveyService(settings=settings)
        assert svc.status == "starting"
        with pytest.raises(EngineBusyError):
            svc.query({})

    def test_start_builds_then_reuses(self, survey_data_dir, tmp_path, settings):
        db_path = str(tmp_path / "survey.duckdb")
        with SurveyService(settings=settings) as svc:
            assert svc.start(str(survey_data_dir), db_path, make_server_info()) is (
                DatabaseState.NO_DATABASE
            )
            assert svc.status == "ready"
        with SurveyService(settings=settings) as svc:
            assert svc.start(str(survey_data_dir), db_path, make_server_info()) is (
                DatabaseState.FRESH
            )

    def test_start_failure_sets_error(self, tmp_path, settings):
        svc = SurveyService(settings=settings)
        with pytest.raises(IngestionError):
            svc.start(str(tmp_path / "missing"), str(tmp_path / "db.duckdb"), make_server_info())
        assert svc.status == "error"

    def test_closed(self, built_db_path, settings):
        svc = SurveyService.open(built_db_path, settings=settings)
        svc.close()
        with pytest.raises(EngineBusyError):
            svc.query({})


class TestServerInfo:
    def test_extra_info_and_config(self, service):
        assert service.extra_info["contentHash"] == service.content_hash
        assert service.config["watermarkImage"] == "logo.png"


class TestQuery:
    def test_query(self, service):
        assert service.query(SURVEY_A) == {"count": 2}

    def test_query_async(self, service):
        assert asyncio.run(service.query_async(SURVEY_B)) == {"count": 1}

    def test_database_hash_checked(self, service):
        assert service.query({}, database_hash=service.content_hash) == {"count": 4}
        with pytest.raises(NotFoundError):
            service.query({}, database_hash="stale")

    def test_invalid_query(self, service):
        with pytest.raises(QueryError):
            service.query({"filter": {"op": "?"}})

    def test_deeply_nested_filter(self, service):
        node = {"op": "=", "field": "survey", "value": "A"}
        for _ in range(5000):
            node = {"op": "not", "arg": node}
        with pytest.raises(QueryError):
            service.query({"filter": node})
        with pytest.raises(QueryError):
            service.register_query({"filter": node})


class TestRegisterAndResolve:
    def test_equivalent_queries_share_hash(self, service):
        a = {"filter": {"op": "and", "args": [
            {"op": "=", "field": "survey", "value": "A"},
            {"op": ">", "field": "exptime", "value": 10},
        ]}}
        b = {"filter": {"op": "and", "args": [
            {"op": ">", "field": "exptime", "value": 10.0},
            {"op": "=", "field": "survey", "value": "A"},
        ]}}
        assert service.register_query(a) == service.register_query(b)

    def test_different_queries_differ(self, service):
        assert service.register_query(SURVEY_A) != service.register_query(SURVEY_B)

    def test_resolve_embeds_database_hash(self, service):
        key = service.register_query(SURVEY_A)
        spec = service.resolve_query(key)
        assert spec["databaseHash"] == service.content_hash
        assert spec["filter"] == {"op": "=", "field": "survey", "value": "A"}

    def test_resolve_returns_copy(self, service):
        key = service.register_query(SURVEY_A)
        service.resolve_query(key)["filter"]["value"] = "B"
        assert service.resolve_query(key)["filter"]["value"] == "A"

    def test_unknown_hash(self, service):
        with pytest.raises(NotFoundError):
            service.resolve_query("0" * 32)

    def test_injected_registry(self, built_db_path, settings):
        registry = InMemoryQueryRegistry(max_entries=1)
        with SurveyService.open(built_db_path, settings=settings, registry=registry) as svc:
            first = svc.register_query(SURVEY_A)
            svc.register_query(SURVEY_B)
            with pytest.raises(NotFoundError):
                svc.resolve_query(first)


class TestTiles:
    def test_fetch_tile_matches_generator(self, service, database, settings):
        key = service.register_query(SURVEY_A)
        expected = TileGenerator(database, settings=settings).fetch_tile(SURVEY_A, 0, 0)
        assert service.fetch_tile(key, 0, 0) == expected

    def test_query_isolation(self, service):
        a = service.register_query(SURVEY_A)
        b = service.register_query(SURVEY_B)
        assert tile_ids(service.fetch_tile(a, 0, 0)) == [0]
        assert tile_ids(service.fetch_tile(b, 0, 1)) == [2]
        assert tile_ids(service.fetch_tile(a, 0, 1)) == []

    def test_allsky_follows_query(self, service):
        key = service.register_query(SURVEY_A)
        assert tile_ids(service.fetch_tile(key, -1, 0)) == [0, 1]

    def test_fetch_tile_async(self, service):
        key = service.register_query({})
        payload = asyncio.run(service.fetch_tile_async(key, -1, 0))
        assert tile_ids(payload) == [0, 1, 2, 3]

    def test_unknown_hash(self, service):
        with pytest.raises(NotFoundError):
            service.fetch_tile("0" * 32, 0, 0)

    def test_invalid_cell(self, service):
        key = service.register_query({})
        with pytest.raises(NotFoundError):
            service.fetch_tile(key, 0, 99)

    def test_stale_registration(self, service, survey_data_dir, tmp_path, settings):
        # A hash registered against another database never resolves to new data
        key = service.register_query(SURVEY_A)
        spec = service.resolve_query(key)
        other_path = str(tmp_path / "other.duckdb")
        with SurveyService(settings=settings) as other:
            other.start(str(survey_data_dir), other_path, make_server_info("data-r2"))
            other.registry.add(key, spec)
            with pytest.raises(NotFoundError):
                other.fetch_tile(key, 0, 0)


class TestManifest:
    def test_known_hash(self, service):
        key = service.register_query({})
        assert "hips_tile_format" in service.manifest(key)

    def test_unknown_hash(self, service):
        with pytest.raises(NotFoundError):
            service.manifest("0" * 32)
