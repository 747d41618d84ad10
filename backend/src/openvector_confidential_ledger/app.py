from __future__ import annotations

from collections import Counter
import json
import signal
import sys
from typing import TextIO

from openvector_confidential_ledger.cli import CliArgs
from openvector_confidential_ledger.common.utils.json_utils import dumps_compact, read_json_config
from openvector_confidential_ledger.common.logger import LogMessage, Logger, StandardLogger
from openvector_confidential_ledger.core.crypto_backend_interface import ICryptoBackend
from openvector_confidential_ledger.core.engine import ConfidentialLedger
from openvector_confidential_ledger.core.event_log import EventLog, EventLogError, FileEventLog
from openvector_confidential_ledger.core.payment import (
    EthereumPaymentConfig,
    EthereumPaymentGateway,
    InMemoryPaymentGateway,
    IPaymentGateway,
)
from openvector_confidential_ledger.core.tee_backend import TEECryptoBackend


config_schema = {
    "type": "object",
    "properties": {
        "logger": {
            "type": "object",
            "properties": {
                "config_path": {"type": "string"},
            },
            "required": ["config_path"],
        },
        "crypto_backend": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": ["tee"]},
                "key_hex": {"type": "string", "pattern": "^[0-9a-fA-F]{64}$"},
            },
            "required": ["type"],
        },
        "event_log": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
        "payment": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": ["memory", "ethereum"]},
                "escrow_balance": {"type": "integer", "minimum": 0},
                "provider": {"type": "string"},
                "owner_account_private_key": {"type": "string"},
                "wei_per_unit": {"type": "integer", "minimum": 1},
            },
            "required": ["type"],
        },
    },
    "required": [
        "logger",
        "crypto_backend",
        "event_log",
        "payment",
    ],
}


class App:
    __slots__ = (
        "_config",
        "_cli_args",
        "_logger",
        "_backend",
        "_payment",
        "_event_log",
        "_out",
    )

    _config: dict
    _cli_args: CliArgs
    _logger: Logger
    _backend: ICryptoBackend
    _payment: IPaymentGateway
    _event_log: EventLog
    _out: TextIO

    def __init__(self, cli_args: CliArgs, out: TextIO = sys.stdout):
        self._cli_args = cli_args
        self._out = out
        self._config = read_json_config(cli_args.config_file_path, config_schema)
        self._logger = StandardLogger(
            self._config["logger"]["config_path"],
        )
        self.__init()

    def run(self) -> int:
        try:
            ledger = ConfidentialLedger.replay(
                self._event_log, self._backend, self._payment, self._logger
            )
            if self._cli_args.command == "replay":
                self._print_summary(ledger)
            elif self._cli_args.command == "audit":
                self._print_audit_trail(ledger)
            else:
                raise ValueError(f"Unknown command: {self._cli_args.command}")
        finally:
            self._event_log.close()
        return 0

    def __init(self):
        self._logger.info("Initializing app")
        self._init_backend()
        self._init_payment()
        self._init_event_log()
        self._register_signal_handlers()
        self._logger.info("App initialized")

    def _init_backend(self):
        backend_config = self._config["crypto_backend"]
        if backend_config["type"] != "tee":
            raise ValueError(f"Unknown crypto backend: {backend_config['type']}")
        key_hex = backend_config.get("key_hex", None)
        if key_hex is None:
            self._logger.warning(
                "No backend key configured, logged ciphertexts will not be decryptable"
            )
        self._backend = TEECryptoBackend(
            self._logger,
            bytes.fromhex(key_hex) if key_hex is not None else None,
        )

    def _init_payment(self):
        payment_config = self._config["payment"]
        if payment_config["type"] == "memory":
            self._payment = InMemoryPaymentGateway(
                payment_config.get("escrow_balance", 0), self._logger
            )
        elif payment_config["type"] == "ethereum":
            for key in ("provider", "owner_account_private_key"):
                if key not in payment_config:
                    self._logger.error(f"Ethereum payment is missing {key}")
                    raise ValueError(f"Ethereum payment is missing {key}")
            self._payment = EthereumPaymentGateway(
                EthereumPaymentConfig(
                    provider=payment_config["provider"],
                    owner_account_private_key=payment_config["owner_account_private_key"],
                    wei_per_unit=payment_config.get("wei_per_unit", 1),
                ),
                self._logger,
            )
        else:
            raise ValueError(f"Unknown payment gateway: {payment_config['type']}")

    def _init_event_log(self):
        path = self._config["event_log"]["path"]
        # inspection only, an absent log is an error and an existing one is never rewritten
        try:
            self._event_log = FileEventLog(path)
        except EventLogError as e:
            self._logger.error(
                LogMessage(
                    message="Could not open event log",
                    structured_log_message_data={"path": path},
                    error=e,
                )
            )
            raise
        self._logger.info(
            LogMessage(
                message="Event log opened",
                structured_log_message_data={"path": path, "events": len(self._event_log)},
            )
        )

    def _register_signal_handlers(self):
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum, frame):
        self._logger.info(f"Received signal {signum}")
        self._event_log.close()
        sys.exit(0)

    def _print_summary(self, ledger: ConfidentialLedger):
        records = ledger.records()
        summary = {
            "events": len(self._event_log),
            "records": len(records),
            "states": dict(Counter(info.state.value for info in records)),
            "schemas": dict(Counter(info.schema_name for info in records)),
        }
        self._out.write(json.dumps(summary, indent=2, sort_keys=True) + "\n")

    def _print_audit_trail(self, ledger: ConfidentialLedger):
        for event in ledger.audit_trail(self._cli_args.record_id):
            self._out.write(dumps_compact(event.model_dump(mode="json")) + "\n")
