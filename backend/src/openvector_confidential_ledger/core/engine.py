from __future__ import annotations

from threading import RLock
from typing import Any, Dict, List

from openvector_confidential_ledger.common.errors import Unauthorized, UnknownField
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.storage import MemoryStorage, Storage
from openvector_confidential_ledger.common.types import (
    READ_GRANT_KINDS,
    TERMINAL_STATES,
    DataType,
    DisclosureRequest,
    EncryptedValue,
    FieldSpec,
    Grant,
    GrantKind,
    LedgerEvent,
    PayoutStatus,
    Plaintext,
    RecordInfo,
    RecordSchema,
    RecordState,
    ThresholdState,
)
from openvector_confidential_ledger.core.access_control import AccessControlLedger
from openvector_confidential_ledger.core.aggregation import AggregationModule
from openvector_confidential_ledger.core.crypto_backend_interface import ICryptoBackend
from openvector_confidential_ledger.core.decryption_broker import DecryptionBroker
from openvector_confidential_ledger.core.evaluator import HomomorphicEvaluator
from openvector_confidential_ledger.core.event_log import EventLog, MemoryEventLog
from openvector_confidential_ledger.core.lifecycle import DELIVERY_SCHEMA, RecordLifecycle
from openvector_confidential_ledger.core.payment import IPaymentGateway
from openvector_confidential_ledger.core.value_store import EncryptedValueStore

AUDIT_OPERATIONS = (
    "grant",
    "revoke",
    "consume",
    "disclose",
    "request_disclosure",
    "vote",
    "threshold_transition",
)


class ConfidentialLedger:
    """Exposed surface of the confidential state engine.

    Every public entry point runs under one re-entrant lock, so callers observe
    a total order of grants, revokes, disclosures, votes and transitions. The
    components record their state deltas into the append-only event log.
    """

    __slots__ = (
        "_logger",
        "_event_log",
        "_lock",
        "_replaying",
        "_store",
        "_evaluator",
        "_acl",
        "_broker",
        "_lifecycle",
        "_aggregation",
    )

    _logger: Logger
    _event_log: EventLog
    _lock: RLock
    _replaying: bool
    _store: EncryptedValueStore
    _evaluator: HomomorphicEvaluator
    _acl: AccessControlLedger
    _broker: DecryptionBroker
    _lifecycle: RecordLifecycle
    _aggregation: AggregationModule

    def __init__(
        self,
        backend: ICryptoBackend,
        payment: IPaymentGateway,
        logger: Logger,
        event_log: EventLog | None = None,
        storage: Storage | None = None,
    ):
        self._logger = logger
        self._event_log = event_log if event_log is not None else MemoryEventLog()
        self._lock = RLock()
        self._replaying = False
        self._store = EncryptedValueStore(
            storage if storage is not None else MemoryStorage(), logger
        )
        self._evaluator = HomomorphicEvaluator(backend, logger)
        self._acl = AccessControlLedger(logger, self._record_event)
        self._broker = DecryptionBroker(
            backend, self._acl, self._store, logger, self._record_event
        )
        self._lifecycle = RecordLifecycle(
            self._store,
            self._acl,
            self._broker,
            self._evaluator,
            payment,
            logger,
            self._record_event,
        )
        self._aggregation = AggregationModule(
            self._lifecycle,
            self._store,
            self._evaluator,
            self._broker,
            logger,
            self._record_event,
        )

    @classmethod
    def replay(
        cls,
        event_log: EventLog,
        backend: ICryptoBackend,
        payment: IPaymentGateway,
        logger: Logger,
    ) -> ConfidentialLedger:
        """Rebuilds an engine from its event log.

        The backend must hold the key the logged ciphertexts were sealed with.
        New events are appended to the same log.
        """
        ledger = cls(backend, payment, logger, event_log=event_log)
        ledger._replaying = True
        try:
            for event in event_log.events():
                ledger._apply(event)
        finally:
            ledger._replaying = False
        logger.info(
            LogMessage(
                message="Ledger replayed",
                structured_log_message_data={"events": len(event_log)},
            )
        )
        return ledger

    def encrypt(self, plaintext: Plaintext, data_type: DataType) -> EncryptedValue:
        """Client side helper turning an input into an EncryptedValue."""
        return self._evaluator.encrypt(plaintext, data_type)

    @property
    def evaluator(self) -> HomomorphicEvaluator:
        return self._evaluator

    def create_record(
        self,
        creator: str,
        encrypted_fields: Dict[str, EncryptedValue],
        schema: RecordSchema = DELIVERY_SCHEMA,
    ) -> int:
        with self._lock:
            return self._lifecycle.create_record(creator, encrypted_fields, schema)

    def assign(
        self, record_id: int, candidate: str, encrypted_threshold: EncryptedValue
    ) -> None:
        with self._lock:
            self._lifecycle.assign(record_id, candidate, encrypted_threshold)

    def complete(self, record_id: int, principal: str) -> int:
        with self._lock:
            return self._lifecycle.complete(record_id, principal)

    def cancel(self, record_id: int, principal: str) -> None:
        with self._lock:
            self._lifecycle.cancel(record_id, principal)

    def retry_payout(self, record_id: int, principal: str) -> None:
        with self._lock:
            self._lifecycle.retry_payout(record_id, principal)

    def record(self, record_id: int) -> RecordInfo:
        return self._lifecycle.info(record_id)

    def records(self) -> List[RecordInfo]:
        return self._lifecycle.records()

    def field(self, record_id: int, field: str) -> EncryptedValue:
        """The current handle of a field, for computing on it, never its plaintext."""
        with self._lock:
            return self._store.get(record_id, field)

    def grant(
        self,
        issuer: str,
        principal: str,
        record_id: int,
        field: str,
        kind: GrantKind,
        delegable: bool = False,
    ) -> Grant:
        """Issues a grant, enforcing the pre-completion leak policy.

        Fields declared without pre-terminal disclosure can only be read by the
        creator until the record is terminal.

        Raises:
            NotFound: If the record does not exist.
            UnknownField: If the field is not in the record's schema.
            Unauthorized: If the issuer may not grant, or the leak policy forbids it.
            InvalidTransition: If a compute grant is requested on a terminal record.
        """
        with self._lock:
            if kind in READ_GRANT_KINDS:
                self._check_disclosable(record_id, field, [principal])
            else:
                self._field_spec(record_id, field)
            return self._acl.grant(issuer, principal, record_id, field, kind, delegable)

    def revoke(self, issuer: str, principal: str, record_id: int, field: str) -> None:
        with self._lock:
            self._acl.revoke(issuer, principal, record_id, field)

    def check(self, principal: str, record_id: int, field: str) -> GrantKind | None:
        with self._lock:
            return self._acl.check(principal, record_id, field)

    def grants(self, record_id: int) -> List[Grant]:
        return self._acl.grants_for(record_id)

    def disclose(self, principal: str, record_id: int, field: str) -> Plaintext:
        with self._lock:
            return self._broker.disclose(principal, record_id, field)

    def request_disclosure(
        self,
        requester: str,
        record_id: int,
        field: str,
        threshold: int,
        eligible_voters: List[str],
    ) -> str:
        """Opens a threshold disclosure, under the same leak policy as read grants.

        Every eligible voter receives the plaintext once the threshold is met,
        so each of them must be someone a read grant could be issued to.

        Raises:
            NotFound: If the record does not exist.
            UnknownField: If the field is not in the record's schema.
            Unauthorized: If the requester lacks authority, or a voter may not read the field yet.
            ValueError: If the threshold cannot be met by the eligible voters.
        """
        with self._lock:
            self._check_disclosable(record_id, field, eligible_voters)
            return self._broker.request_disclosure(
                requester, record_id, field, threshold, eligible_voters
            )

    def vote(self, principal: str, data_id: str, approve: bool = True) -> ThresholdState:
        with self._lock:
            return self._broker.vote(principal, data_id, approve)

    def finalize(self, data_id: str) -> ThresholdState:
        with self._lock:
            return self._broker.finalize(data_id)

    def threshold_result(self, principal: str, data_id: str) -> Plaintext:
        with self._lock:
            return self._broker.threshold_result(principal, data_id)

    def disclosure_status(self, data_id: str) -> DisclosureRequest:
        return self._broker.status(data_id)

    def open_counter(self, subject: str) -> int:
        with self._lock:
            return self._aggregation.open_counter(subject)

    def accumulate(self, subject: str, value: EncryptedValue) -> None:
        with self._lock:
            self._aggregation.accumulate(subject, value)

    def average(self, principal: str, subject: str) -> int:
        with self._lock:
            return self._aggregation.average(principal, subject)

    def audit_trail(self, record_id: int | None = None) -> List[LedgerEvent]:
        """Grant, revoke and disclosure events, optionally for one record."""
        trail = [e for e in self._event_log.events() if e.operation in AUDIT_OPERATIONS]
        if record_id is None:
            return trail
        threshold_ids = {
            e.delta["request_opened"]["data_id"]
            for e in trail
            if "request_opened" in e.delta
            and e.delta["request_opened"]["record_id"] == record_id
        }
        return [
            e
            for e in trail
            if e.arguments.get("record_id") == record_id
            or e.arguments.get("data_id") in threshold_ids
        ]

    def _field_spec(self, record_id: int, field: str) -> FieldSpec:
        self._lifecycle.info(record_id)
        spec = self._store.schema(record_id).fields.get(field)
        if spec is None:
            raise UnknownField(f"Field {field} is not declared on record {record_id}")
        return spec

    def _check_disclosable(self, record_id: int, field: str, principals: List[str]) -> None:
        spec = self._field_spec(record_id, field)
        info = self._lifecycle.info(record_id)
        if spec.pre_terminal_disclosure or info.state in TERMINAL_STATES:
            return
        readers = [p for p in principals if p != info.creator]
        if readers:
            raise Unauthorized(
                f"{field} of record {record_id} is not disclosable to {readers} "
                "before the record is terminal"
            )

    def _record_event(
        self, operation: str, arguments: Dict[str, Any], delta: Dict[str, Any]
    ) -> None:
        if self._replaying:
            return
        self._event_log.append(operation, arguments, delta)

    def _apply(self, event: LedgerEvent) -> None:
        delta = event.delta
        if "record_created" in delta:
            created = delta["record_created"]
            self._lifecycle.restore_record(
                RecordInfo.model_validate(created["info"]),
                RecordSchema.model_validate(created["schema"]),
                self._values(created["fields"]),
            )
        elif "fields_written" in delta:
            written = delta["fields_written"]
            self._lifecycle.restore_fields(written["record_id"], self._values(written["fields"]))
        elif "state_changed" in delta:
            changed = delta["state_changed"]
            self._lifecycle.restore_state(
                changed["record_id"], RecordState(changed["state"]), changed["assignee"]
            )
        elif "payout" in delta:
            payout = delta["payout"]
            self._lifecycle.restore_payout(
                payout["record_id"], PayoutStatus(payout["status"]), payout.get("reference")
            )
        elif "candidate_rejected" in delta:
            rejected = delta["candidate_rejected"]
            self._lifecycle.restore_rejection(rejected["record_id"], rejected["candidate"])
        elif "grant_issued" in delta:
            self._acl.restore_grant(Grant.model_validate(delta["grant_issued"]))
        elif "grants_revoked" in delta:
            for grant_id in delta["grants_revoked"]:
                self._acl.restore_retirement(grant_id)
        elif "grant_consumed" in delta:
            self._acl.restore_retirement(delta["grant_consumed"])
        elif "disclosed" in delta:
            # audit only, nothing to rebuild
            pass
        elif "request_opened" in delta:
            self._broker.restore_request(
                DisclosureRequest.model_validate(delta["request_opened"]),
                EncryptedValue.model_validate(delta["value"]),
            )
        elif "vote_recorded" in delta:
            vote = delta["vote_recorded"]
            self._broker.restore_vote(vote["data_id"], vote["principal"], vote["approve"])
        elif "threshold_state" in delta:
            state = delta["threshold_state"]
            self._broker.restore_state(state["data_id"], ThresholdState(state["state"]))
        elif "counter_opened" in delta:
            opened = delta["counter_opened"]
            self._aggregation.restore_counter(opened["subject"], opened["record_id"])
        else:
            raise ValueError(f"Unknown delta in event {event.sequence}: {sorted(delta)}")

    def _values(self, fields: Dict[str, Any]) -> Dict[str, EncryptedValue]:
        return {name: EncryptedValue.model_validate(value) for name, value in fields.items()}
