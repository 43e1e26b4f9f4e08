# Copyright (c) 2025 Trae AI. All rights reserved.

import pytest
import yaml
from typer.testing import CliRunner
from conftest import matched_movie, media_file, movie
from reelkeeper.cli.main import app
from reelkeeper.infrastructure.db.database import Database
from reelkeeper.infrastructure.db.repository import SnapshotRepository
from reelkeeper.services.library_service import LibraryStore

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path, library_root):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "roots": [str(library_root)],
        "database_path": str(tmp_path / "cli.db"),
    }), encoding="utf-8")
    return str(path)


def test_parse_command():
    result = runner.invoke(app, ["parse", "/tv/Show.A.S01E02.mkv"])

    assert result.exit_code == 0
    assert "Show A" in result.output
    assert "S01E02" in result.output


def test_empty_library(config_path):
    result = runner.invoke(app, ["library", "--config-path", config_path])

    assert result.exit_code == 0
    assert "0" in result.output


def test_unknown_pending_entry_fails(config_path):
    result = runner.invoke(app, ["resolve", "nope", "--choice", "1", "--config-path", config_path])

    assert result.exit_code == 1
    assert "Unknown library entry" in result.output


def test_bad_config_fails(tmp_path):
    result = runner.invoke(app, ["pending", "--config-path", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Error loading config" in result.output


def test_collection_commands(config_path, tmp_path):
    store = LibraryStore(SnapshotRepository(Database(tmp_path / "cli.db")))
    f = media_file("/lib/movies/Matrix.mkv", "fp-matrix")
    store.commit([f], {"fp-matrix": matched_movie(f.path, movie(603, "The Matrix", 1999))})
    matrix_id = store.snapshot().links["fp-matrix"].item_id

    result = runner.invoke(app, ["collection", "create", "Sci-Fi", "--config-path", config_path])
    assert result.exit_code == 0
    assert "Created" in result.output

    result = runner.invoke(app, ["collection", "add", "1", str(matrix_id), "--config-path", config_path])
    assert result.exit_code == 0
    assert "1" in result.output

    result = runner.invoke(app, ["collection", "show", "1", "--config-path", config_path])
    assert result.exit_code == 0
    assert "The Matrix (1999)" in result.output

    result = runner.invoke(app, ["collection", "add", "1", "999", "--config-path", config_path])
    assert result.exit_code == 1
    assert "Unknown library entry" in result.output

    result = runner.invoke(app, ["collection", "delete", "1", "--config-path", config_path])
    assert result.exit_code == 0
    result = runner.invoke(app, ["collection", "show", "1", "--config-path", config_path])
    assert result.exit_code == 1
