"""Shared fixtures: a fast client config, the Flask app, and a live threaded server."""

from __future__ import annotations

import socket
import threading

import pytest
import yaml
from werkzeug.serving import make_server

from edgespeed.config import AppConfig, load_config
from edgespeed.db import init_db
from edgespeed.exporter import CSVExporter
from edgespeed.measurements.manager import MeasurementManager
from edgespeed.web.app import create_web_app

FAST_CLIENT = {
    "threads": 2,
    "duration_ms": 500,
    "ping_count": 5,
    "ping_delay_ms": 10,
    "tick_interval_ms": 50,
    "upload_size": 256 * 1024,
    "retry_backoff_ms": 20,
    "probe_timeout_ms": 2000,
}


@pytest.fixture
def config(tmp_path) -> AppConfig:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "server": {"chunk_size": 1024 * 1024},
                "client": FAST_CLIENT,
            }
        ),
        encoding="utf-8",
    )
    return load_config(str(path))


@pytest.fixture
def session_factory(config):
    return init_db(config.paths.data_dir)


@pytest.fixture
def manager(config, session_factory) -> MeasurementManager:
    return MeasurementManager(config, session_factory)


@pytest.fixture
def exporter(config, session_factory) -> CSVExporter:
    return CSVExporter(config, session_factory)


@pytest.fixture
def web_app(config, manager, exporter):
    app = create_web_app(config=config, measurement_manager=manager, exporter=exporter)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(web_app):
    return web_app.test_client()


@pytest.fixture
def live_server(web_app):
    server = make_server("127.0.0.1", 0, web_app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_port}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def unreachable_url() -> str:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}"
