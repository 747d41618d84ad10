from __future__ import annotations

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from openvector_confidential_ledger.common.errors import (
    AlreadyAssigned,
    AssignmentRejected,
    FailedTransfer,
    InvalidTransition,
    MissingField,
    NotFound,
    TransferPending,
    TypeMismatch,
    Unauthorized,
    UnknownField,
)
from openvector_confidential_ledger.common.types import (
    DataType,
    GrantKind,
    PayoutStatus,
    RecordState,
)
from openvector_confidential_ledger.core.engine import ConfidentialLedger
from openvector_confidential_ledger.core.payment import (
    EthereumPaymentConfig,
    EthereumPaymentGateway,
    InMemoryPaymentGateway,
)
from openvector_confidential_ledger.core.tee_backend import TEECryptoBackend

from conftest import BACKEND_KEY, DEV_PRIVATE_KEY, create_delivery, reveal


def test_delivery_scenario(ledger, payment):
    record_id = create_delivery(ledger, reward=100, postal_code=12345)
    info = ledger.record(record_id)
    assert info.state == RecordState.CREATED
    assert info.creator == "alice"

    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))
    info = ledger.record(record_id)
    assert info.state == RecordState.ASSIGNED
    assert info.assignee == "bob"
    # bob only ever learned the decision
    assert ledger.check("bob", record_id, "reward") is None
    assert ledger.check("bob", record_id, "postal_code") is None

    with pytest.raises(Unauthorized):
        ledger.complete(record_id, "carol")
    assert ledger.record(record_id).state == RecordState.ASSIGNED

    assert ledger.complete(record_id, "bob") == 100
    info = ledger.record(record_id)
    assert info.state == RecordState.COMPLETED
    assert info.payout_status == PayoutStatus.SETTLED
    assert payment.balance_of("bob") == 100
    assert payment.escrow_balance == 10_000 - 100
    assert ledger.disclose("alice", record_id, "completed") is True


def test_acceptance_is_disclosed_once_to_the_candidate(ledger):
    record_id = create_delivery(ledger)
    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))

    trail = ledger.audit_trail(record_id)
    disclosures = [e for e in trail if e.operation == "disclose"]
    assert [(e.arguments["principal"], e.arguments["field"]) for e in disclosures] == [
        ("bob", "acceptance")
    ]
    assert ledger.check("bob", record_id, "acceptance") is None


def test_rejected_candidate_leaves_record_open(ledger):
    record_id = create_delivery(ledger, postal_code=12345)

    with pytest.raises(AssignmentRejected):
        ledger.assign(record_id, "bob", ledger.encrypt(10000, DataType.UINT32))
    info = ledger.record(record_id)
    assert info.state == RecordState.CREATED
    assert info.assignee is None

    ledger.assign(record_id, "carol", ledger.encrypt(12345, DataType.UINT32))
    assert ledger.record(record_id).assignee == "carol"


def test_assign_twice_is_rejected(ledger):
    record_id = create_delivery(ledger)
    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))
    with pytest.raises(AlreadyAssigned):
        ledger.assign(record_id, "carol", ledger.encrypt(15000, DataType.UINT32))
    assert ledger.record(record_id).assignee == "bob"


def test_assign_rejects_wrong_threshold_type(ledger):
    record_id = create_delivery(ledger)
    with pytest.raises(TypeMismatch):
        ledger.assign(record_id, "bob", ledger.encrypt(200, DataType.UINT8))
    assert ledger.record(record_id).state == RecordState.CREATED


def test_complete_requires_assignment(ledger):
    record_id = create_delivery(ledger)
    with pytest.raises(InvalidTransition):
        ledger.complete(record_id, "bob")


def test_unknown_record(ledger):
    with pytest.raises(NotFound):
        ledger.record(99)
    with pytest.raises(NotFound):
        ledger.assign(99, "bob", ledger.encrypt(1, DataType.UINT32))


def test_create_validates_fields(ledger):
    reward = ledger.encrypt(100, DataType.UINT32)
    with pytest.raises(MissingField):
        ledger.create_record("alice", {"reward": reward})
    with pytest.raises(UnknownField):
        ledger.create_record(
            "alice",
            {
                "reward": reward,
                "postal_code": ledger.encrypt(1, DataType.UINT32),
                "tip": ledger.encrypt(1, DataType.UINT32),
            },
        )
    with pytest.raises(UnknownField):
        # computed fields are not supplied by the creator
        ledger.create_record(
            "alice",
            {
                "reward": reward,
                "postal_code": ledger.encrypt(1, DataType.UINT32),
                "acceptance": ledger.encrypt(True, DataType.BOOL),
            },
        )
    with pytest.raises(TypeMismatch):
        ledger.create_record(
            "alice",
            {"reward": reward, "postal_code": ledger.encrypt(1, DataType.UINT16)},
        )
    assert ledger.records() == []


def test_record_ids_are_sequential(ledger):
    first = create_delivery(ledger)
    second = create_delivery(ledger)
    assert second == first + 1
    assert [info.record_id for info in ledger.records()] == [first, second]


def test_cancel(ledger):
    record_id = create_delivery(ledger)
    with pytest.raises(Unauthorized):
        ledger.cancel(record_id, "bob")

    ledger.cancel(record_id, "alice")
    assert ledger.record(record_id).state == RecordState.CANCELLED
    with pytest.raises(InvalidTransition):
        ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))
    with pytest.raises(InvalidTransition):
        ledger.cancel(record_id, "alice")


def test_cancel_after_assignment(ledger, payment):
    record_id = create_delivery(ledger)
    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))
    ledger.cancel(record_id, "alice")
    assert ledger.record(record_id).state == RecordState.CANCELLED
    with pytest.raises(InvalidTransition):
        ledger.complete(record_id, "bob")
    assert payment.balance_of("bob") == 0


def test_completed_record_is_terminal(ledger):
    record_id = create_delivery(ledger)
    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))
    ledger.complete(record_id, "bob")

    with pytest.raises(InvalidTransition):
        ledger.cancel(record_id, "alice")
    with pytest.raises(InvalidTransition):
        ledger.complete(record_id, "bob")
    with pytest.raises(InvalidTransition):
        ledger.grant("alice", "bob", record_id, "reward", GrantKind.COMPUTE_ONLY)
    # reads stay possible after completion
    ledger.grant("alice", "carol", record_id, "reward", GrantKind.READ_ONCE)
    assert ledger.disclose("carol", record_id, "reward") == 100


def test_failed_payout_keeps_record_completed(logger, backend):
    payment = InMemoryPaymentGateway(50, logger)
    ledger = ConfidentialLedger(backend, payment, logger)
    record_id = create_delivery(ledger, reward=100)
    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))

    with pytest.raises(FailedTransfer):
        ledger.complete(record_id, "bob")
    info = ledger.record(record_id)
    assert info.state == RecordState.COMPLETED
    assert info.payout_status == PayoutStatus.FAILED
    assert payment.balance_of("bob") == 0

    with pytest.raises(Unauthorized):
        ledger.retry_payout(record_id, "carol")
    payment.fund(100)
    ledger.retry_payout(record_id, "bob")
    assert ledger.record(record_id).payout_status == PayoutStatus.SETTLED
    assert payment.balance_of("bob") == 100

    # a settled payout is never paid twice
    ledger.retry_payout(record_id, "bob")
    assert payment.balance_of("bob") == 100


def test_retry_payout_requires_completion(ledger):
    record_id = create_delivery(ledger)
    with pytest.raises(InvalidTransition):
        ledger.retry_payout(record_id, "bob")


def test_rejected_candidate_is_evaluated_once(ledger):
    record_id = create_delivery(ledger, postal_code=12345)
    with pytest.raises(AssignmentRejected):
        ledger.assign(record_id, "eve", ledger.encrypt(100, DataType.UINT32))

    with pytest.raises(InvalidTransition) as excinfo:
        ledger.assign(record_id, "eve", ledger.encrypt(20000, DataType.UINT32))
    assert not isinstance(excinfo.value, AssignmentRejected)
    info = ledger.record(record_id)
    assert info.state == RecordState.CREATED
    assert info.rejected_candidates == ("eve",)

    decisions = [
        e
        for e in ledger.audit_trail(record_id)
        if e.operation == "disclose" and e.arguments["principal"] == "eve"
    ]
    assert len(decisions) == 1

    ledger.assign(record_id, "bob", ledger.encrypt(15000, DataType.UINT32))
    assert ledger.record(record_id).assignee == "bob"


def test_transitions_only_apply_to_deliveries(ledger):
    counter = ledger.open_counter("bob")
    with pytest.raises(InvalidTransition):
        ledger.cancel(counter, "bob")
    with pytest.raises(InvalidTransition):
        ledger.assign(counter, "carol", ledger.encrypt(1, DataType.UINT32))
    with pytest.raises(InvalidTransition):
        ledger.complete(counter, "bob")
    assert ledger.record(counter).state == RecordState.CREATED

    ledger.accumulate("bob", ledger.encrypt(7, DataType.UINT32))
    assert ledger.average("bob", "bob") == 7


def test_stored_handles_can_be_computed_on(ledger):
    record_id = create_delivery(ledger, reward=100)
    tip = ledger.evaluator.add(
        ledger.field(record_id, "reward"), ledger.encrypt(5, DataType.UINT32)
    )
    assert reveal(ledger, u32=tip) == {"u32": 105}
    with pytest.raises(NotFound):
        ledger.field(record_id, "tip")


ASSIGNEE_ADDRESS = "0x" + "ab" * 20


class StubEth:
    """Broadcasts every transaction, receipts only show up once mined."""

    def __init__(self):
        self.default_account = None
        self.sent = []
        # receipt status once mined, None while it is not
        self.mined_status = None

    def send_transaction(self, tx):
        self.sent.append(tx["value"])
        return bytes([len(self.sent)]) * 32

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        raise TimeExhausted(f"Transaction {tx_hash.hex()} is not in the chain after {timeout}s")

    def get_transaction_receipt(self, tx_hash):
        if self.mined_status is None:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return {"status": self.mined_status}


class StubWeb3:
    def __init__(self):
        self.eth = StubEth()
        self.middleware_onion = self

    def inject(self, middleware, layer):
        pass


@pytest.fixture
def stub_web3():
    return StubWeb3()


@pytest.fixture
def chain_ledger(backend, logger, event_log, stub_web3):
    gateway = EthereumPaymentGateway(
        EthereumPaymentConfig(provider="unused", owner_account_private_key=DEV_PRIVATE_KEY),
        logger,
        web3=stub_web3,
    )
    return ConfidentialLedger(backend, gateway, logger, event_log=event_log)


def assigned_delivery(ledger):
    record_id = create_delivery(ledger, reward=100)
    ledger.assign(record_id, ASSIGNEE_ADDRESS, ledger.encrypt(15000, DataType.UINT32))
    return record_id


def test_unconfirmed_payout_is_not_resent(chain_ledger, stub_web3, event_log, logger):
    record_id = assigned_delivery(chain_ledger)
    with pytest.raises(TransferPending):
        chain_ledger.complete(record_id, ASSIGNEE_ADDRESS)
    info = chain_ledger.record(record_id)
    assert info.state == RecordState.COMPLETED
    assert info.payout_status == PayoutStatus.PENDING
    assert info.payout_reference == "0x" + "01" * 32

    with pytest.raises(TransferPending):
        chain_ledger.retry_payout(record_id, ASSIGNEE_ADDRESS)
    assert stub_web3.eth.sent == [100]

    stub_web3.eth.mined_status = 1
    restored = ConfidentialLedger.replay(
        event_log,
        TEECryptoBackend(logger, BACKEND_KEY),
        EthereumPaymentGateway(
            EthereumPaymentConfig(provider="unused", owner_account_private_key=DEV_PRIVATE_KEY),
            logger,
            web3=stub_web3,
        ),
        logger,
    )
    assert restored.record(record_id).payout_status == PayoutStatus.PENDING
    restored.retry_payout(record_id, ASSIGNEE_ADDRESS)
    assert restored.record(record_id).payout_status == PayoutStatus.SETTLED
    assert stub_web3.eth.sent == [100]


def test_reverted_pending_payout_is_resent(chain_ledger, stub_web3):
    record_id = assigned_delivery(chain_ledger)
    with pytest.raises(TransferPending):
        chain_ledger.complete(record_id, ASSIGNEE_ADDRESS)

    stub_web3.eth.mined_status = 0
    with pytest.raises(TransferPending):
        chain_ledger.retry_payout(record_id, ASSIGNEE_ADDRESS)
    assert stub_web3.eth.sent == [100, 100]
    assert chain_ledger.record(record_id).payout_reference == "0x" + "02" * 32
