"""Flask application factory and HTTP routes."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path

from flask import Flask, Response, jsonify, render_template, request
from werkzeug.exceptions import ClientDisconnected
from werkzeug.middleware.proxy_fix import ProxyFix

from ..config import AppConfig
from ..exporter import CSVExporter
from ..measurements.manager import MeasurementManager
from .streams import drain, get_byte_source

LOGGER = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Pragma, Cache-Control",
}

DOWNLOAD_HEADERS = {
    "Content-Encoding": "identity",
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}


def create_web_app(
    config: AppConfig,
    measurement_manager: MeasurementManager,
    exporter: CSVExporter,
) -> Flask:
    template_folder = Path(__file__).resolve().parent / "templates"

    app = Flask(__name__, template_folder=template_folder, static_folder=None)
    app.config["SECRET_KEY"] = config.web.secret_key

    if config.web.reverse_proxy_headers:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    executor = ThreadPoolExecutor(max_workers=1)
    source = get_byte_source(config.server.chunk_size)

    @app.before_request
    def short_circuit_preflight():
        if request.method == "OPTIONS":
            return Response(status=204)
        return None

    @app.after_request
    def add_cors_headers(response: Response) -> Response:
        response.headers.update(CORS_HEADERS)
        return response

    @app.get("/api/down")
    def api_down():
        return Response(
            source.stream(),
            mimetype="application/octet-stream",
            headers=DOWNLOAD_HEADERS,
            direct_passthrough=True,
        )

    @app.post("/api/up")
    def api_up():
        try:
            received = drain(request.stream, config.server.drain_read_size)
        except (ClientDisconnected, OSError) as exc:
            LOGGER.debug("Upload body abandoned by client: %s", exc)
        else:
            LOGGER.debug("Upload sink drained %d bytes", received)
        return Response("ok", mimetype="text/plain", headers={"Cache-Control": "no-store"})

    @app.get("/api/ping")
    def api_ping():
        return Response("pong", mimetype="text/plain", headers={"Cache-Control": "no-store, no-cache"})

    @app.get("/api/results")
    def api_results():
        limit = request.args.get("limit", type=int)
        status = request.args.get("status")
        rows = measurement_manager.get_measurements(limit=limit, status=status)
        return jsonify([measurement_manager.to_dict(row) for row in rows])

    @app.get("/api/results/latest")
    def api_latest_result():
        row = measurement_manager.latest()
        return jsonify(measurement_manager.to_dict(row) if row else None)

    @app.get("/api/export/csv")
    def api_export_csv():
        buffer = exporter.build_csv()
        filename = f"results-{datetime.utcnow().strftime('%Y%m%dT%H%M%S')}.csv"
        return Response(
            buffer.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    @app.post("/api/manual/speedtest")
    def api_manual_speedtest():
        if measurement_manager.in_progress:
            return jsonify({"error": "Speedtest already in progress"}), 409
        executor.submit(_run_speedtest_task, measurement_manager, exporter)
        return jsonify({"status": "queued", "task": "speedtest", "target": config.client.target_url}), 202

    @app.route("/", defaults={"path": ""})
    @app.route("/<path:path>")
    def index(path: str):
        return render_template("index.html", client=config.client)

    return app


def _run_speedtest_task(manager: MeasurementManager, exporter: CSVExporter):
    try:
        record = manager.run_speedtest()
        if record is not None:
            exporter.write_snapshot()
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.exception("Manual speedtest task failed: %s", exc)
