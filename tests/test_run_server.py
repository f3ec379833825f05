from __future__ import annotations

from typer.testing import CliRunner

from pagesnap import server

runner = CliRunner()


def test_serve_defaults_to_single_uvicorn_process(monkeypatch):
    calls: list[tuple[str, dict]] = []
    monkeypatch.setattr(server.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("APP_MODULE", raising=False)

    result = runner.invoke(server.app, ["--host", "0.0.0.0", "--log-level", "DEBUG"])

    assert result.exit_code == 0, result.output
    app_path, kwargs = calls[0]
    assert app_path == "pagesnap.main:app"
    assert kwargs["host"] == "0.0.0.0"
    assert kwargs["port"] == 8000
    assert kwargs["workers"] == 1
    assert kwargs["log_level"] == "debug"


def test_serve_reads_port_from_env(monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(server.uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("PAGESNAP_SERVER_RELOAD", "yes")

    result = runner.invoke(server.app, [])

    assert result.exit_code == 0, result.output
    assert calls[0]["port"] == 9100
    assert calls[0]["reload"] is True
