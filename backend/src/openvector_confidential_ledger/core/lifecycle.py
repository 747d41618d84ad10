from __future__ import annotations

from threading import RLock
import time
from typing import Dict, List

from openvector_confidential_ledger.common.errors import (
    AlreadyAssigned,
    AssignmentRejected,
    FailedTransfer,
    InvalidTransition,
    MissingField,
    NotFound,
    PermissionDenied,
    TransferPending,
    Unauthorized,
    UnknownField,
)
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.types import (
    TERMINAL_STATES,
    CompareOp,
    DataType,
    EncryptedValue,
    FieldSpec,
    GrantKind,
    PayoutStatus,
    RecordInfo,
    RecordSchema,
    RecordState,
)
from openvector_confidential_ledger.core.access_control import AccessControlLedger
from openvector_confidential_ledger.core.decryption_broker import DecryptionBroker
from openvector_confidential_ledger.core.evaluator import HomomorphicEvaluator
from openvector_confidential_ledger.core.event_log import EventSink, discard_event
from openvector_confidential_ledger.core.payment import IPaymentGateway
from openvector_confidential_ledger.core.value_store import EncryptedValueStore

REWARD_FIELD = "reward"
POSTAL_CODE_FIELD = "postal_code"
CANDIDATE_THRESHOLD_FIELD = "candidate_threshold"
ACCEPTANCE_FIELD = "acceptance"
COMPLETED_FIELD = "completed"

DELIVERY_SCHEMA = RecordSchema(
    name="delivery",
    fields={
        REWARD_FIELD: FieldSpec(data_type=DataType.UINT32, pre_terminal_disclosure=False),
        POSTAL_CODE_FIELD: FieldSpec(data_type=DataType.UINT32, pre_terminal_disclosure=False),
        CANDIDATE_THRESHOLD_FIELD: FieldSpec(
            data_type=DataType.UINT32, input=False, pre_terminal_disclosure=False
        ),
        # the only value ever disclosed before completion, a boolean decision
        ACCEPTANCE_FIELD: FieldSpec(data_type=DataType.BOOL, input=False),
        COMPLETED_FIELD: FieldSpec(data_type=DataType.BOOL, input=False),
    },
)

ALLOWED_TRANSITIONS: Dict[RecordState, tuple[RecordState, ...]] = {
    RecordState.CREATED: (RecordState.ASSIGNED, RecordState.CANCELLED),
    RecordState.ASSIGNED: (RecordState.COMPLETED, RecordState.CANCELLED),
    RecordState.COMPLETED: (),
    RecordState.CANCELLED: (),
}


class RecordLifecycle:
    """Drives records through created -> assigned -> completed / cancelled.

    Secret dependent decisions are taken over ciphertexts. The acceptance
    comparison in `assign` is the single sanctioned leak point before
    completion: its boolean outcome, never the compared values, is disclosed
    to the candidate through the decryption broker. The reward is only
    disclosed to the assignee once the record is completed.
    """

    __slots__ = (
        "_store",
        "_acl",
        "_broker",
        "_evaluator",
        "_payment",
        "_logger",
        "_event_sink",
        "_lock",
        "_records",
        "_payout_amounts",
        "_next_id",
    )

    _store: EncryptedValueStore
    _acl: AccessControlLedger
    _broker: DecryptionBroker
    _evaluator: HomomorphicEvaluator
    _payment: IPaymentGateway
    _logger: Logger
    _event_sink: EventSink
    _lock: RLock
    _records: Dict[int, RecordInfo]
    # disclosed rewards of failed payouts, kept for a caller driven retry
    _payout_amounts: Dict[int, int]
    _next_id: int

    def __init__(
        self,
        store: EncryptedValueStore,
        acl: AccessControlLedger,
        broker: DecryptionBroker,
        evaluator: HomomorphicEvaluator,
        payment: IPaymentGateway,
        logger: Logger,
        event_sink: EventSink = discard_event,
    ):
        self._store = store
        self._acl = acl
        self._broker = broker
        self._evaluator = evaluator
        self._payment = payment
        self._logger = logger
        self._event_sink = event_sink
        self._lock = RLock()
        self._records = {}
        self._payout_amounts = {}
        self._next_id = 0

    def create_record(
        self,
        creator: str,
        encrypted_fields: Dict[str, EncryptedValue],
        schema: RecordSchema = DELIVERY_SCHEMA,
    ) -> int:
        """Creates a record from the full set of encrypted input fields.

        Computed fields start as encrypted zero / false. The creator gets a
        delegable persistent read grant on every field.

        Raises:
            UnknownField: If a supplied field is not an input field of the schema.
            MissingField: If an input field is not supplied.
            TypeMismatch: If a supplied value has the wrong type.
        """
        inputs = schema.input_fields()
        for name in encrypted_fields:
            if name not in inputs:
                raise UnknownField(f"{name} is not an input field of schema {schema.name}")
        missing = [name for name in inputs if name not in encrypted_fields]
        if missing:
            raise MissingField(f"Missing input fields {missing} for schema {schema.name}")

        fields = dict(encrypted_fields)
        for name in schema.computed_fields():
            fields[name] = self._default_value(schema.fields[name].data_type)

        with self._lock:
            record_id = self._next_id
            self._store.create(record_id, schema, fields)
            self._next_id += 1
            self._acl.register_record(record_id, creator)
            info = RecordInfo(
                record_id=record_id,
                schema_name=schema.name,
                creator=creator,
                created_at=time.time(),
                state=RecordState.CREATED,
            )
            self._records[record_id] = info
            self._event_sink(
                "create_record",
                {"creator": creator, "schema": schema.name, "fields": sorted(encrypted_fields)},
                {
                    "record_created": {
                        "info": info.model_dump(mode="json"),
                        "schema": schema.model_dump(mode="json"),
                        "fields": {n: v.model_dump(mode="json") for n, v in fields.items()},
                    }
                },
            )
            for name in schema.fields:
                self._acl.grant(
                    creator, creator, record_id, name, GrantKind.READ_PERSISTENT, delegable=True
                )
        self._logger.info(
            LogMessage(
                message="Record created",
                structured_log_message_data={
                    "record_id": record_id,
                    "schema": schema.name,
                    "creator": creator,
                },
            )
        )
        return record_id

    def assign(
        self, record_id: int, candidate: str, encrypted_threshold: EncryptedValue
    ) -> None:
        """Assigns the record to a candidate whose threshold covers the postal code.

        Computes `postal_code <= threshold` homomorphically and discloses only
        that boolean to the candidate, through a read-once grant issued in the
        creator's name.

        Each candidate is evaluated at most once per record, a rejected
        candidate cannot probe the postal code with further thresholds.

        Raises:
            NotFound: If the record does not exist or the decision cannot be disclosed.
            AlreadyAssigned: If the record already has an assignee.
            InvalidTransition: If the record is terminal, is not a delivery, or
                the candidate was rejected before.
            AssignmentRejected: If the disclosed decision is false.
            TypeMismatch: If the threshold is not of the postal code's type.
        """
        with self._lock:
            info = self._delivery_info(record_id)
            if info.state == RecordState.ASSIGNED:
                raise AlreadyAssigned(f"Record {record_id} is already assigned")
            self._check_transition(info, RecordState.ASSIGNED)
            if candidate in info.rejected_candidates:
                raise InvalidTransition(
                    f"Candidate {candidate} was already evaluated for record {record_id}"
                )

            postal_code = self._store.get(record_id, POSTAL_CODE_FIELD)
            decision = self._evaluator.compare(CompareOp.LE, postal_code, encrypted_threshold)
            self._write_fields(
                record_id,
                {CANDIDATE_THRESHOLD_FIELD: encrypted_threshold, ACCEPTANCE_FIELD: decision},
            )

            self._acl.grant(
                info.creator, candidate, record_id, ACCEPTANCE_FIELD, GrantKind.READ_ONCE
            )
            try:
                accepted = self._broker.disclose(candidate, record_id, ACCEPTANCE_FIELD)
            except PermissionDenied as e:
                raise NotFound(
                    f"Acceptance decision of record {record_id} is not disclosable to {candidate}"
                ) from e
            self._logger.info(
                LogMessage(
                    message="Acceptance decision disclosed",
                    structured_log_message_data={
                        "record_id": record_id,
                        "candidate": candidate,
                        "accepted": bool(accepted),
                    },
                )
            )
            if not accepted:
                self._reject_candidate(record_id, candidate)
                raise AssignmentRejected(
                    f"Candidate {candidate} does not cover the destination of record {record_id}"
                )
            self._set_state(record_id, RecordState.ASSIGNED, assignee=candidate)

    def complete(self, record_id: int, principal: str) -> int:
        """Completes the record and pays the disclosed reward to the assignee.

        Returns the reward disclosed to the assignee.

        Raises:
            NotFound: If the record does not exist.
            InvalidTransition: If the record is not an assigned delivery.
            Unauthorized: If the principal is not the assignee.
            FailedTransfer: If the payment fails, the record stays completed.
            TransferPending: If the payment was submitted but is unconfirmed.
        """
        with self._lock:
            info = self._delivery_info(record_id)
            self._check_transition(info, RecordState.COMPLETED)
            if principal != info.assignee:
                raise Unauthorized(f"Only the assignee may complete record {record_id}")

            encrypted_true = self._evaluator.constant(True, DataType.BOOL)
            completed = self._evaluator.select(
                encrypted_true,
                encrypted_true,
                self._store.get(record_id, COMPLETED_FIELD),
            )
            self._write_fields(record_id, {COMPLETED_FIELD: completed})
            self._set_state(record_id, RecordState.COMPLETED)

            amount = self._disclose_reward(record_id)
            self._pay(record_id, principal, amount)
            return amount

    def retry_payout(self, record_id: int, principal: str) -> None:
        """Retries a failed payout on behalf of the assignee, a settled payout is a no-op.

        A pending payout is confirmed with the payment gateway first and only
        resent once the gateway reports it failed.

        Raises:
            InvalidTransition: If the record is not completed.
            Unauthorized: If the principal is not the assignee.
            TransferPending: If a pending payout is still unconfirmed.
            FailedTransfer: If the payment fails again.
        """
        with self._lock:
            info = self.info(record_id)
            if info.state != RecordState.COMPLETED:
                raise InvalidTransition(f"Record {record_id} is not completed")
            if principal != info.assignee:
                raise Unauthorized(f"Only the assignee may retry the payout of {record_id}")
            if info.payout_status == PayoutStatus.SETTLED:
                return
            if info.payout_status == PayoutStatus.PENDING and info.payout_reference is not None:
                if self._payment.confirm(info.payout_reference):
                    self._payout_amounts.pop(record_id, None)
                    self._set_payout(record_id, principal, PayoutStatus.SETTLED)
                    return
                self._set_payout(record_id, principal, PayoutStatus.FAILED)
            amount = self._payout_amounts.get(record_id)
            if amount is None:
                amount = self._disclose_reward(record_id)
            self._pay(record_id, principal, amount)

    def cancel(self, record_id: int, principal: str) -> None:
        """Cancels a non-terminal record, no value is disclosed.

        Raises:
            NotFound: If the record does not exist.
            InvalidTransition: If the record is terminal or not a delivery.
            Unauthorized: If the principal is not the creator.
        """
        with self._lock:
            info = self._delivery_info(record_id)
            self._check_transition(info, RecordState.CANCELLED)
            if principal != info.creator:
                raise Unauthorized(f"Only the creator may cancel record {record_id}")
            self._set_state(record_id, RecordState.CANCELLED)

    def info(self, record_id: int) -> RecordInfo:
        with self._lock:
            if record_id not in self._records:
                raise NotFound(f"Record {record_id} not found")
            return self._records[record_id]

    def records(self) -> List[RecordInfo]:
        with self._lock:
            return [self._records[record_id] for record_id in sorted(self._records)]

    def write_computed_fields(self, record_id: int, fields: Dict[str, EncryptedValue]) -> None:
        """Writes engine computed fields of a non-terminal record."""
        with self._lock:
            info = self.info(record_id)
            if info.state in TERMINAL_STATES:
                raise InvalidTransition(f"Record {record_id} accepts no more field writes")
            self._write_fields(record_id, fields)

    def restore_record(
        self, info: RecordInfo, schema: RecordSchema, fields: Dict[str, EncryptedValue]
    ) -> None:
        with self._lock:
            self._store.create(info.record_id, schema, fields)
            self._acl.register_record(info.record_id, info.creator)
            self._records[info.record_id] = info
            self._next_id = max(self._next_id, info.record_id + 1)

    def restore_fields(self, record_id: int, fields: Dict[str, EncryptedValue]) -> None:
        with self._lock:
            for name, value in fields.items():
                self._store.put(record_id, name, value)

    def restore_state(self, record_id: int, state: RecordState, assignee: str | None) -> None:
        with self._lock:
            self._apply_state(record_id, state, assignee)

    def restore_payout(
        self, record_id: int, status: PayoutStatus, reference: str | None = None
    ) -> None:
        with self._lock:
            self._records[record_id] = self.info(record_id).model_copy(
                update={"payout_status": status, "payout_reference": reference}
            )

    def restore_rejection(self, record_id: int, candidate: str) -> None:
        with self._lock:
            info = self.info(record_id)
            self._records[record_id] = info.model_copy(
                update={"rejected_candidates": info.rejected_candidates + (candidate,)}
            )

    def _disclose_reward(self, record_id: int) -> int:
        info = self.info(record_id)
        assignee = info.assignee
        if assignee is None:
            raise InvalidTransition(f"Record {record_id} has no assignee")
        self._acl.grant(info.creator, assignee, record_id, REWARD_FIELD, GrantKind.READ_ONCE)
        amount = self._broker.disclose(assignee, record_id, REWARD_FIELD)
        return int(amount)

    def _pay(self, record_id: int, to: str, amount: int) -> None:
        try:
            self._payment.transfer(to, amount)
        except TransferPending as e:
            self._payout_amounts[record_id] = amount
            self._set_payout(record_id, to, PayoutStatus.PENDING, e.reference)
            raise
        except FailedTransfer:
            self._payout_amounts[record_id] = amount
            self._set_payout(record_id, to, PayoutStatus.FAILED)
            raise
        self._payout_amounts.pop(record_id, None)
        self._set_payout(record_id, to, PayoutStatus.SETTLED)

    def _set_payout(
        self, record_id: int, to: str, status: PayoutStatus, reference: str | None = None
    ) -> None:
        self._records[record_id] = self.info(record_id).model_copy(
            update={"payout_status": status, "payout_reference": reference}
        )
        self._event_sink(
            "payout",
            {"record_id": record_id, "to": to},
            {
                "payout": {
                    "record_id": record_id,
                    "to": to,
                    "status": status.value,
                    "reference": reference,
                }
            },
        )
        self._logger.info(
            LogMessage(
                message="Payout " + status.value,
                structured_log_message_data={"record_id": record_id, "to": to},
            )
        )

    def _delivery_info(self, record_id: int) -> RecordInfo:
        # records of other schemas only hold values, they never change state
        info = self.info(record_id)
        if info.schema_name != DELIVERY_SCHEMA.name:
            raise InvalidTransition(
                f"Record {record_id} is a {info.schema_name} record, not a delivery"
            )
        return info

    def _reject_candidate(self, record_id: int, candidate: str) -> None:
        self.restore_rejection(record_id, candidate)
        self._event_sink(
            "reject_candidate",
            {"record_id": record_id, "candidate": candidate},
            {"candidate_rejected": {"record_id": record_id, "candidate": candidate}},
        )

    def _check_transition(self, info: RecordInfo, target: RecordState) -> None:
        if target not in ALLOWED_TRANSITIONS[info.state]:
            raise InvalidTransition(
                f"Record {info.record_id} cannot go from {info.state} to {target}"
            )

    def _set_state(
        self, record_id: int, state: RecordState, assignee: str | None = None
    ) -> None:
        self._apply_state(record_id, state, assignee)
        info = self._records[record_id]
        self._event_sink(
            "transition",
            {"record_id": record_id, "state": state.value},
            {
                "state_changed": {
                    "record_id": record_id,
                    "state": state.value,
                    "assignee": info.assignee,
                }
            },
        )
        self._logger.info(
            LogMessage(
                message="Record state changed",
                structured_log_message_data={
                    "record_id": record_id,
                    "state": state.value,
                },
            )
        )

    def _apply_state(self, record_id: int, state: RecordState, assignee: str | None) -> None:
        update: Dict[str, object] = {"state": state}
        if assignee is not None:
            update["assignee"] = assignee
        self._records[record_id] = self.info(record_id).model_copy(update=update)
        if state in TERMINAL_STATES:
            self._store.seal(record_id)
            self._acl.mark_terminal(record_id)

    def _write_fields(self, record_id: int, fields: Dict[str, EncryptedValue]) -> None:
        for name, value in fields.items():
            self._store.put(record_id, name, value)
        self._event_sink(
            "write_fields",
            {"record_id": record_id, "fields": sorted(fields)},
            {
                "fields_written": {
                    "record_id": record_id,
                    "fields": {n: v.model_dump(mode="json") for n, v in fields.items()},
                }
            },
        )

    def _default_value(self, data_type: DataType) -> EncryptedValue:
        if data_type == DataType.BOOL:
            return self._evaluator.constant(False, DataType.BOOL)
        if data_type == DataType.ADDRESS:
            return self._evaluator.constant("0x" + "0" * 40, DataType.ADDRESS)
        return self._evaluator.constant(0, data_type)
