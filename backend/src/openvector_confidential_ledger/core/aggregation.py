from __future__ import annotations

from threading import RLock
from typing import Dict

from openvector_confidential_ledger.common.errors import NotFound, TypeMismatch
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.types import (
    DataType,
    EncryptedValue,
    FieldSpec,
    RecordSchema,
)
from openvector_confidential_ledger.core.decryption_broker import DecryptionBroker
from openvector_confidential_ledger.core.evaluator import HomomorphicEvaluator
from openvector_confidential_ledger.core.event_log import EventSink, discard_event
from openvector_confidential_ledger.core.lifecycle import RecordLifecycle
from openvector_confidential_ledger.core.value_store import EncryptedValueStore

TOTAL_FIELD = "total"
COUNT_FIELD = "count"
COUNTER_DATA_TYPE = DataType.UINT32

COUNTER_SCHEMA = RecordSchema(
    name="aggregate_counter",
    fields={
        TOTAL_FIELD: FieldSpec(data_type=COUNTER_DATA_TYPE, input=False),
        COUNT_FIELD: FieldSpec(data_type=COUNTER_DATA_TYPE, input=False),
    },
)


class AggregationModule:
    """Running encrypted totals and counts per subject, e.g. reputation scores.

    Each subject's counter is a record of the aggregate_counter schema owned by
    the subject, so reading it goes through the usual grants. Counters only
    ever grow.
    """

    __slots__ = (
        "_lifecycle",
        "_store",
        "_evaluator",
        "_broker",
        "_logger",
        "_event_sink",
        "_lock",
        "_counters",
    )

    _lifecycle: RecordLifecycle
    _store: EncryptedValueStore
    _evaluator: HomomorphicEvaluator
    _broker: DecryptionBroker
    _logger: Logger
    _event_sink: EventSink
    _lock: RLock
    _counters: Dict[str, int]

    def __init__(
        self,
        lifecycle: RecordLifecycle,
        store: EncryptedValueStore,
        evaluator: HomomorphicEvaluator,
        broker: DecryptionBroker,
        logger: Logger,
        event_sink: EventSink = discard_event,
    ):
        self._lifecycle = lifecycle
        self._store = store
        self._evaluator = evaluator
        self._broker = broker
        self._logger = logger
        self._event_sink = event_sink
        self._lock = RLock()
        self._counters = {}

    def open_counter(self, subject: str) -> int:
        """Returns the record id of the subject's counter, creating it if needed."""
        with self._lock:
            if subject in self._counters:
                return self._counters[subject]
            record_id = self._lifecycle.create_record(subject, {}, schema=COUNTER_SCHEMA)
            self._counters[subject] = record_id
            self._event_sink(
                "open_counter",
                {"subject": subject},
                {"counter_opened": {"subject": subject, "record_id": record_id}},
            )
            return record_id

    def counter_record(self, subject: str) -> int:
        with self._lock:
            if subject not in self._counters:
                raise NotFound(f"No counter for subject {subject}")
            return self._counters[subject]

    def accumulate(self, subject: str, value: EncryptedValue) -> None:
        """Adds an encrypted value to the subject's total and one to its count.

        Raises:
            TypeMismatch: If the value is not of the counter's width.
        """
        if value.data_type != COUNTER_DATA_TYPE:
            raise TypeMismatch(
                f"Counters accumulate {COUNTER_DATA_TYPE} values, got {value.data_type}"
            )
        with self._lock:
            record_id = self.open_counter(subject)
            total = self._evaluator.add(self._store.get(record_id, TOTAL_FIELD), value)
            count = self._evaluator.add(
                self._store.get(record_id, COUNT_FIELD),
                self._evaluator.constant(1, COUNTER_DATA_TYPE),
            )
            self._lifecycle.write_computed_fields(
                record_id, {TOTAL_FIELD: total, COUNT_FIELD: count}
            )
        self._logger.debug(
            LogMessage(
                message="Value accumulated",
                structured_log_message_data={"subject": subject, "record_id": record_id},
            )
        )

    def average(self, principal: str, subject: str) -> int:
        """Discloses total and count to the principal and divides in plaintext.

        Both disclosures are gated independently, an empty counter averages to 0.

        Raises:
            NotFound: If the subject has no counter.
            PermissionDenied: If the principal may not read the total or the count.
        """
        record_id = self.counter_record(subject)
        total = int(self._broker.disclose(principal, record_id, TOTAL_FIELD))
        count = int(self._broker.disclose(principal, record_id, COUNT_FIELD))
        if count == 0:
            return 0
        return total // count

    def restore_counter(self, subject: str, record_id: int) -> None:
        with self._lock:
            self._counters[subject] = record_id
