from __future__ import annotations

from typing import Dict

import pytest

from openvector_confidential_ledger.common.logger import StandardLogger
from openvector_confidential_ledger.common.types import (
    DataType,
    EncryptedValue,
    FieldSpec,
    RecordSchema,
)
from openvector_confidential_ledger.core.engine import ConfidentialLedger
from openvector_confidential_ledger.core.event_log import MemoryEventLog
from openvector_confidential_ledger.core.payment import InMemoryPaymentGateway
from openvector_confidential_ledger.core.tee_backend import TEECryptoBackend

BACKEND_KEY = bytes(range(32))

# well known development account, never holds real funds
DEV_PRIVATE_KEY = "0x4f3edf983ac636a65a842ce7c78d9aa706d3b113bce9c46f30d7d21715b23b1d"

# lets tests disclose the result of an arbitrary computation
SCRATCH_SCHEMA = RecordSchema(
    name="scratch",
    fields={
        "u8": FieldSpec(data_type=DataType.UINT8),
        "u32": FieldSpec(data_type=DataType.UINT32),
        "flag": FieldSpec(data_type=DataType.BOOL),
        "owner": FieldSpec(data_type=DataType.ADDRESS),
    },
)


@pytest.fixture
def logger():
    return StandardLogger()


@pytest.fixture
def backend(logger):
    return TEECryptoBackend(logger, BACKEND_KEY)


@pytest.fixture
def payment(logger):
    return InMemoryPaymentGateway(10_000, logger)


@pytest.fixture
def event_log():
    return MemoryEventLog()


@pytest.fixture
def ledger(backend, payment, logger, event_log):
    return ConfidentialLedger(backend, payment, logger, event_log=event_log)


def create_delivery(
    ledger: ConfidentialLedger,
    creator: str = "alice",
    reward: int = 100,
    postal_code: int = 12345,
) -> int:
    return ledger.create_record(
        creator,
        {
            "reward": ledger.encrypt(reward, DataType.UINT32),
            "postal_code": ledger.encrypt(postal_code, DataType.UINT32),
        },
    )


def complete_delivery(ledger: ConfidentialLedger, reward: int = 100, assignee: str = "bob") -> int:
    """A delivery completed by the assignee, so its secret fields may be disclosed."""
    record_id = create_delivery(ledger, reward=reward)
    ledger.assign(record_id, assignee, ledger.encrypt(15000, DataType.UINT32))
    ledger.complete(record_id, assignee)
    return record_id


def reveal(ledger: ConfidentialLedger, **values: EncryptedValue) -> Dict[str, object]:
    """Stores computed values in a scratch record and discloses them to its creator."""
    fields = {
        "u8": ledger.encrypt(0, DataType.UINT8),
        "u32": ledger.encrypt(0, DataType.UINT32),
        "flag": ledger.encrypt(False, DataType.BOOL),
        "owner": ledger.encrypt("0x" + "0" * 40, DataType.ADDRESS),
    }
    fields.update(values)
    record_id = ledger.create_record("tester", fields, schema=SCRATCH_SCHEMA)
    return {name: ledger.disclose("tester", record_id, name) for name in values}
