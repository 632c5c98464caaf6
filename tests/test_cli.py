"""Tests for the command line interface."""

import json

import pytest

from skymosaic.cli import build_parser, main


class TestCli:
    def test_build_and_inspect(self, survey_data_dir, tmp_path, capsys):
        db_path = str(tmp_path / "cli.duckdb")
        assert main(["build", str(survey_data_dir), db_path, "--data-revision", "r1"]) == 0
        built = json.loads(capsys.readouterr().out)
        assert built["feature_count"] == 4

        assert main(["inspect", db_path]) == 0
        assert json.loads(capsys.readouterr().out)["content_hash"] == built["content_hash"]

    def test_query(self, built_db_path, capsys):
        query = json.dumps({"filter": {"op": "=", "field": "survey", "value": "A"}})
        assert main(["query", built_db_path, query]) == 0
        assert json.loads(capsys.readouterr().out) == {"count": 2}

    def test_query_from_file(self, built_db_path, tmp_path, capsys):
        path = tmp_path / "q.json"
        path.write_text(json.dumps({"aggregations": [{"out": "ids", "operation": "IDS"}]}))
        assert main(["query", built_db_path, f"@{path}"]) == 0
        assert json.loads(capsys.readouterr().out) == {"ids": [0, 1, 2, 3]}

    def test_register(self, built_db_path, capsys):
        assert main(["register", built_db_path, "{}"]) == 0
        assert len(capsys.readouterr().out.strip()) == 32

    def test_tile(self, built_db_path, tmp_path):
        out = tmp_path / "tile.geojson"
        assert main(["tile", built_db_path, "{}", "0", "1", "-o", str(out)]) == 0
        ids = [f["properties"]["id"] for f in json.loads(out.read_bytes())["features"]]
        assert ids == [2, 3]

    def test_allsky_tile(self, built_db_path, capsys):
        assert main(["tile", built_db_path, "{}", "-1", "0"]) == 0
        assert len(json.loads(capsys.readouterr().out)["features"]) == 4

    def test_manifest(self, built_db_path, capsys):
        assert main(["manifest", built_db_path]) == 0
        assert "hips_tile_format" in capsys.readouterr().out

    def test_engine_error_exit_code(self, built_db_path):
        assert main(["tile", built_db_path, "{}", "0", "12"]) == 1

    def test_invalid_query_exit_code(self, built_db_path):
        assert main(["query", built_db_path, '{"filter": {"op": "?"}}']) == 1

    def test_bad_json(self, built_db_path):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["query", built_db_path, "{nope"])
