from __future__ import annotations

import io
import json

import jsonschema
import pytest

from openvector_confidential_ledger.app import App
from openvector_confidential_ledger.cli import CliArgs, parse_args
from openvector_confidential_ledger.common.logger import StandardLogger
from openvector_confidential_ledger.common.types import DataType, GrantKind
from openvector_confidential_ledger.core.engine import ConfidentialLedger
from openvector_confidential_ledger.core.event_log import EventLogError, FileEventLog
from openvector_confidential_ledger.core.payment import InMemoryPaymentGateway
from openvector_confidential_ledger.core.tee_backend import TEECryptoBackend

from conftest import BACKEND_KEY, create_delivery

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "loggers": {
        "openvector_confidential_ledger_logger": {"level": "INFO"},
    },
}


@pytest.fixture
def config_path(tmp_path):
    logging_path = tmp_path / "logging.json"
    logging_path.write_text(json.dumps(LOGGING_CONFIG))
    config = {
        "logger": {"config_path": str(logging_path)},
        "crypto_backend": {"type": "tee", "key_hex": BACKEND_KEY.hex()},
        "event_log": {"path": str(tmp_path / "events.jsonl")},
        "payment": {"type": "memory", "escrow_balance": 1_000},
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config))
    return path


@pytest.fixture
def populated_log(tmp_path, config_path):
    logger = StandardLogger()
    event_log = FileEventLog.create(str(tmp_path / "events.jsonl"))
    ledger = ConfidentialLedger(
        TEECryptoBackend(logger, BACKEND_KEY),
        InMemoryPaymentGateway(1_000, logger),
        logger,
        event_log=event_log,
    )
    first = create_delivery(ledger)
    ledger.assign(first, "bob", ledger.encrypt(15000, DataType.UINT32))
    ledger.complete(first, "bob")
    second = create_delivery(ledger)
    ledger.grant("alice", "carol", second, "acceptance", GrantKind.READ_ONCE)
    ledger.disclose("carol", second, "acceptance")
    event_log.close()
    return first, second


def test_parse_args():
    args = parse_args(["config.json", "audit", "--record-id", "3"])
    assert args == CliArgs(config_file_path="config.json", command="audit", record_id=3)
    assert parse_args(["config.json", "replay"]).record_id is None
    with pytest.raises(SystemExit):
        parse_args(["config.json", "serve"])


def test_replay_command_prints_summary(config_path, populated_log):
    out = io.StringIO()
    app = App(CliArgs(config_file_path=str(config_path), command="replay"), out=out)
    assert app.run() == 0

    summary = json.loads(out.getvalue())
    assert summary["records"] == 2
    assert summary["states"] == {"completed": 1, "created": 1}
    assert summary["schemas"] == {"delivery": 2}
    assert summary["events"] > 0


def test_audit_command_filters_by_record(config_path, populated_log):
    first, second = populated_log
    out = io.StringIO()
    app = App(
        CliArgs(config_file_path=str(config_path), command="audit", record_id=second),
        out=out,
    )
    assert app.run() == 0

    events = [json.loads(line) for line in out.getvalue().splitlines()]
    assert events
    assert all(e["arguments"]["record_id"] == second for e in events)
    assert [e["operation"] for e in events if e["arguments"].get("principal") == "carol"] == [
        "grant",
        "consume",
        "disclose",
    ]


def test_missing_log_is_an_error(config_path, tmp_path):
    with pytest.raises(EventLogError):
        App(CliArgs(config_file_path=str(config_path), command="replay"))
    assert not (tmp_path / "events.jsonl").exists()


def test_inspection_leaves_the_log_untouched(config_path, populated_log, tmp_path):
    path = tmp_path / "events.jsonl"
    before = path.read_bytes()
    for command in ("replay", "audit"):
        App(CliArgs(config_file_path=str(config_path), command=command), out=io.StringIO()).run()
    assert path.read_bytes() == before


def test_overwrite_option_is_rejected(tmp_path, config_path, populated_log):
    config = json.loads(config_path.read_text())
    config["event_log"]["overwrite"] = True
    bad_path = tmp_path / "bad.json"
    bad_path.write_text(json.dumps(config))
    before = (tmp_path / "events.jsonl").read_bytes()
    with pytest.raises(jsonschema.ValidationError):
        App(CliArgs(config_file_path=str(bad_path), command="audit"))
    assert (tmp_path / "events.jsonl").read_bytes() == before


def test_invalid_config_is_rejected(tmp_path, config_path):
    config = json.loads(config_path.read_text())
    config["crypto_backend"]["key_hex"] = "not hex"
    bad_path = tmp_path / "bad.json"
    bad_path.write_text(json.dumps(config))
    with pytest.raises(jsonschema.ValidationError):
        App(CliArgs(config_file_path=str(bad_path), command="replay"))


def test_ethereum_payment_requires_provider(tmp_path, config_path):
    config = json.loads(config_path.read_text())
    config["payment"] = {"type": "ethereum"}
    bad_path = tmp_path / "bad.json"
    bad_path.write_text(json.dumps(config))
    with pytest.raises(ValueError):
        App(CliArgs(config_file_path=str(bad_path), command="replay"))
