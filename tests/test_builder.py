"""Tests for database ingestion."""

import json
import os

import pytest

from conftest import SURVEY_CONFIG, collection, feature, make_server_info, square, write_survey
from skymosaic.errors import IngestionError
from skymosaic.query.builder import build, collection_files, load_survey_config
from skymosaic.query.database import Database, inspect


class TestCollectionDiscovery:
    def test_sorted_and_schema_excluded(self, survey_data_dir):
        assert collection_files(str(survey_data_dir)) == [
            "a_survey.geojson",
            "b_survey/extra.geojson",
            "broken.json",
        ]

    def test_hidden_directories_skipped(self, tmp_path):
        data_dir = write_survey(tmp_path / "data")
        (data_dir / ".git").mkdir()
        (data_dir / ".git" / "x.json").write_text("{}")
        assert ".git/x.json" not in collection_files(str(data_dir))

    def test_missing_directory(self, tmp_path):
        with pytest.raises(IngestionError):
            collection_files(str(tmp_path / "missing"))


class TestSurveyConfig:
    def test_presentation_keys_preserved(self, survey_data_dir):
        config = load_survey_config(str(survey_data_dir))
        public = config.to_public_dict()
        assert public["watermarkImage"] == "logo.png"
        assert public["fields"][0]["widget"] == "tags"

    def test_yaml_config(self, tmp_path):
        (tmp_path / "survey_config.yml").write_text(
            "fields:\n  - id: survey\n    type: string\n"
        )
        assert load_survey_config(str(tmp_path)).field("survey").type == "string"

    def test_missing_config(self, tmp_path):
        with pytest.raises(IngestionError, match="No survey config"):
            load_survey_config(str(tmp_path))

    def test_reserved_field_id(self, tmp_path):
        (tmp_path / "survey_config.json").write_text(
            json.dumps({"fields": [{"id": "geometry"}]})
        )
        with pytest.raises(IngestionError):
            load_survey_config(str(tmp_path))

    def test_duplicate_field_id(self, tmp_path):
        (tmp_path / "survey_config.json").write_text(
            json.dumps({"fields": [{"id": "a"}, {"id": "a"}]})
        )
        with pytest.raises(IngestionError):
            load_survey_config(str(tmp_path))

    def test_forbidden_computed_expression(self, tmp_path):
        (tmp_path / "survey_config.json").write_text(
            json.dumps({"fields": [{"id": "x", "type": "number",
                                    "computed": "1; DROP TABLE features"}]})
        )
        with pytest.raises(IngestionError, match="Computed field"):
            load_survey_config(str(tmp_path))


class TestBuild:
    """Test the built database contents."""

    def test_counts(self, built_db_path):
        info = inspect(built_db_path)
        assert info.feature_count == 4
        assert info.skipped_count == 2
        assert info.index_order == 4

    def test_content_hash(self, built_db_path):
        assert inspect(built_db_path).content_hash == make_server_info().content_hash()

    def test_extra_info(self, database):
        info = database.extra_info
        assert info["data_revision"] == "data-r1"
        assert info["contentHash"] == database.content_hash

    def test_config_served_verbatim(self, database):
        assert database.config["watermarkImage"] == "logo.png"
        assert database.config["fields"][2]["formatFunc"] == "date(x)"

    def test_ids_follow_visiting_order(self, database):
        cursor = database.cursor()
        rows = cursor.execute("SELECT id, survey FROM features ORDER BY id").fetchall()
        cursor.close()
        assert rows == [(0, "A"), (1, "A"), (2, "B"), (3, "C")]

    def test_values_converted(self, database):
        cursor = database.cursor()
        rows = cursor.execute(
            "SELECT exptime, flagged, exptime_h FROM features ORDER BY id"
        ).fetchall()
        cursor.close()
        assert rows[2][0] == 300.0  # from the string "300"
        assert rows[3][1] is False  # from the string "false"
        assert rows[2][2] == pytest.approx(300.0 / 3600)

    def test_cell_membership(self, database):
        cursor = database.cursor()
        rows = cursor.execute(
            "SELECT DISTINCT feature_id, pix >> 8 FROM feature_cells ORDER BY 1, 2"
        ).fetchall()
        cursor.close()
        # base cell of each index cell at order 4
        assert rows == [(0, 0), (1, 4), (2, 1), (3, 0), (3, 1)]

    def test_idempotent(self, survey_data_dir, tmp_path, settings):
        first = build(str(survey_data_dir), str(tmp_path / "one.duckdb"),
                      make_server_info(), settings=settings)
        second = build(str(survey_data_dir), str(tmp_path / "two.duckdb"),
                       make_server_info(), settings=settings)
        assert first == second

    def test_local_modifications_salt_hash(self, survey_data_dir, tmp_path, settings):
        info = build(
            str(survey_data_dir),
            str(tmp_path / "local.duckdb"),
            make_server_info(data_local_modifications=True),
            settings=settings,
        )
        assert info.content_hash != make_server_info().content_hash()

    def test_empty_survey(self, tmp_path, settings):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "survey_config.json").write_text(json.dumps(SURVEY_CONFIG))
        info = build(str(data_dir), str(tmp_path / "empty.duckdb"), make_server_info(),
                     settings=settings)
        assert info.feature_count == 0


class TestAtomicity:
    """A failed build must leave the previous database untouched."""

    def test_failed_build_keeps_previous(self, survey_data_dir, tmp_path, settings):
        db_path = str(tmp_path / "survey.duckdb")
        build(str(survey_data_dir), db_path, make_server_info(), settings=settings)

        bad_dir = tmp_path / "bad"
        bad_dir.mkdir()
        (bad_dir / "survey_config.json").write_text(json.dumps({
            "fields": [{"id": "x", "type": "number", "computed": "missing_column * 2"}]
        }))
        (bad_dir / "data.geojson").write_text(json.dumps(collection(
            feature(square(10, 10))
        )))
        with pytest.raises(IngestionError):
            build(str(bad_dir), db_path, make_server_info("data-r2"), settings=settings)

        assert inspect(db_path).content_hash == make_server_info().content_hash()
        leftovers = [name for name in os.listdir(tmp_path) if name.startswith(".skymosaic-")]
        assert leftovers == []
        with Database.open(db_path) as database:
            assert database.feature_count == 4
