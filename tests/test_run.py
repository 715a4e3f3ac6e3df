"""Tests for the run.py entrypoint."""

from __future__ import annotations

import zlib
from types import SimpleNamespace

from typer.testing import CliRunner

import run
from coursedb.context import AppContext
from coursedb.processing import DecodedCourse, ZipCourseCodec


runner = CliRunner()


def _setup_serve(monkeypatch, tmp_path, upload_limit):
    captured = {}

    fake_context = SimpleNamespace(index=[])
    monkeypatch.setattr(run, "_build_context", lambda: fake_context)

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(context, root_path):
        captured["context"] = context
        captured["root_path"] = root_path
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)
    monkeypatch.setattr(run, "get_max_upload_bytes", lambda: upload_limit)

    run.serve(host="0.0.0.0", port=9000, root_path="api/")

    captured["app_state_server"] = dummy_app.state.server
    return captured


def test_serve_applies_request_size_limit(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=50 * 1024 * 1024)

    assert captured["config_kwargs"]["limit_max_request_size"] == 50 * 1024 * 1024
    assert captured["config_kwargs"]["root_path"] == "/api"
    assert captured["root_path"] == "/api"
    assert captured["app_state_server"] is captured["server_instance"]
    assert captured["server_run"] is True


def test_serve_omits_limit_when_disabled(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0)

    assert "limit_max_request_size" not in captured["config_kwargs"]


def _patch_initialize(monkeypatch, temp_config):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)


def test_ingest_and_export_commands(monkeypatch, tmp_path, temp_config, make_payload, thumbnail_bytes):
    _patch_initialize(monkeypatch, temp_config)
    archive = tmp_path / "upload.zip"
    archive.write_bytes(
        ZipCourseCodec.encode(
            [DecodedCourse(title="From CLI", payload=make_payload(9), thumbnail=thumbnail_bytes)]
        )
    )

    ingested = runner.invoke(
        run.cli, ["ingest", str(archive), "--owner", "alice", "--difficulty", "normal"]
    )
    assert ingested.exit_code == 0, ingested.output
    assert "Accepted #1: From CLI" in ingested.output

    duplicate = runner.invoke(run.cli, ["ingest", str(archive), "--owner", "bob"])
    assert duplicate.exit_code == 1
    assert "0 accepted, 1 rejected." in duplicate.output

    output = tmp_path / "out" / "course.bin"
    exported = runner.invoke(
        run.cli, ["export", "1", "--output", str(output), "--representation", "compressed"]
    )
    assert exported.exit_code == 0, exported.output
    assert zlib.decompress(output.read_bytes()) == make_payload(9)

    bundle = tmp_path / "bundle.zip"
    bundled = runner.invoke(run.cli, ["export", "1", "-o", str(bundle), "--bundle"])
    assert bundled.exit_code == 0, bundled.output
    assert ZipCourseCodec().decode(bundle.read_bytes())[0].title == "From CLI"


def test_export_reports_unknown_course(monkeypatch, tmp_path, temp_config):
    _patch_initialize(monkeypatch, temp_config)

    result = runner.invoke(run.cli, ["export", "77", "-o", str(tmp_path / "x.bin")])

    assert result.exit_code == 1
    assert "Export failed" in result.output


def test_overview_lists_courses(monkeypatch, temp_config, make_payload, thumbnail_bytes):
    _patch_initialize(monkeypatch, temp_config)
    AppContext.build(temp_config).ingestor.ingest_batch(
        [DecodedCourse(title="Overview Course", payload=make_payload(11), thumbnail=thumbnail_bytes)],
        owner="alice",
    )

    result = runner.invoke(run.cli, ["overview"])

    assert result.exit_code == 0, result.output
    assert "Overview Course" in result.output
