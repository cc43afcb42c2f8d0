from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

import pytest
import yaml

from edgespeed import bootstrap
from edgespeed.measurements.models import Phase, TestSession


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    werkzeug_level = logging.getLogger("werkzeug").level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("werkzeug").setLevel(werkzeug_level)


def _write_config(tmp_path, logging_section):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"logging": logging_section}), encoding="utf-8")
    return str(path)


def test_bootstrap_configures_rotating_log(tmp_path, restore_root_logger):
    config_path = _write_config(
        tmp_path,
        {"level": "debug", "file_name": "edge.log", "max_bytes": 4096, "backup_count": 2},
    )

    context = bootstrap(config_path)
    logging.getLogger("edgespeed.test").info("hello from the edge")

    root = logging.getLogger()
    file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
    assert context.log_path == (tmp_path / "logs" / "edge.log").resolve()
    assert root.level == logging.DEBUG
    assert len(file_handlers) == 1
    assert file_handlers[0].maxBytes == 4096 and file_handlers[0].backupCount == 2
    assert logging.getLogger("werkzeug").level == logging.WARNING
    file_handlers[0].flush()
    assert "hello from the edge" in context.log_path.read_text(encoding="utf-8")


def test_repeated_bootstrap_does_not_duplicate_handlers(tmp_path, restore_root_logger):
    config_path = _write_config(tmp_path, {"level": "INFO"})

    bootstrap(config_path)
    bootstrap(config_path)

    assert len(logging.getLogger().handlers) == 2


def test_record_persists_and_snapshots(tmp_path, restore_root_logger):
    context = bootstrap(_write_config(tmp_path, {"level": "INFO"}))
    session = TestSession(target="http://edge", threads=2)
    session.finish(Phase.STOPPED)

    measurement = context.record(session)

    assert measurement.status == "stopped"
    assert context.measurements.latest().id == measurement.id
    snapshot = context.config.paths.data_dir / context.config.export.csv_name
    assert "http://edge,stopped" in snapshot.read_text(encoding="utf-8")
