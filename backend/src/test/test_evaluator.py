from __future__ import annotations

import pytest
from pydantic import ValidationError

from openvector_confidential_ledger.common.errors import BackendFailure, TypeMismatch
from openvector_confidential_ledger.common.types import CompareOp, DataType
from openvector_confidential_ledger.core.evaluator import HomomorphicEvaluator
from openvector_confidential_ledger.core.tee_backend import TEECryptoBackend

from conftest import reveal


def test_add_is_commutative_and_associative(ledger):
    ev = ledger.evaluator
    a = ev.encrypt(7, DataType.UINT32)
    b = ev.encrypt(11, DataType.UINT32)
    c = ev.encrypt(13, DataType.UINT32)

    assert reveal(ledger, u32=ev.add(a, b)) == {"u32": 18}
    assert reveal(ledger, u32=ev.add(b, a)) == {"u32": 18}
    assert reveal(ledger, u32=ev.add(ev.add(a, b), c)) == {"u32": 31}
    assert reveal(ledger, u32=ev.add(a, ev.add(b, c))) == {"u32": 31}


def test_add_wraps_at_declared_width(ledger):
    ev = ledger.evaluator
    total = ev.add(ev.encrypt(200, DataType.UINT8), ev.encrypt(100, DataType.UINT8))
    assert total.data_type == DataType.UINT8
    assert reveal(ledger, u8=total) == {"u8": 44}


def test_add_returns_fresh_handle(ledger):
    ev = ledger.evaluator
    a = ev.encrypt(1, DataType.UINT32)
    b = ev.encrypt(2, DataType.UINT32)
    result = ev.add(a, b)
    assert result.handle not in (a.handle, b.handle)


def test_add_rejects_mismatched_types(ledger):
    ev = ledger.evaluator
    with pytest.raises(TypeMismatch):
        ev.add(ev.encrypt(1, DataType.UINT8), ev.encrypt(1, DataType.UINT32))
    with pytest.raises(TypeMismatch):
        ev.add(ev.encrypt(True, DataType.BOOL), ev.encrypt(False, DataType.BOOL))


@pytest.mark.parametrize(
    "op, a, b, expected",
    [
        (CompareOp.LE, 12345, 15000, True),
        (CompareOp.LE, 15000, 15000, True),
        (CompareOp.LT, 15000, 15000, False),
        (CompareOp.GE, 3, 2, True),
        (CompareOp.GT, 2, 3, False),
        (CompareOp.EQ, 9, 9, True),
        (CompareOp.EQ, 9, 8, False),
    ],
)
def test_compare(ledger, op, a, b, expected):
    ev = ledger.evaluator
    result = ev.compare(op, ev.encrypt(a, DataType.UINT32), ev.encrypt(b, DataType.UINT32))
    assert result.data_type == DataType.BOOL
    assert reveal(ledger, flag=result) == {"flag": expected}


def test_compare_equality_on_addresses(ledger):
    ev = ledger.evaluator
    address = "0x90F8bf6A479f320ead074411a4B0e7944Ea8c9C1"
    result = ev.compare(
        CompareOp.EQ,
        ev.encrypt(address, DataType.ADDRESS),
        ev.encrypt(address.lower(), DataType.ADDRESS),
    )
    assert reveal(ledger, flag=result) == {"flag": True}


def test_compare_rejects_ordering_on_bool(ledger):
    ev = ledger.evaluator
    with pytest.raises(TypeMismatch):
        ev.compare(CompareOp.LT, ev.encrypt(True, DataType.BOOL), ev.encrypt(False, DataType.BOOL))


def test_compare_rejects_mismatched_types(ledger):
    ev = ledger.evaluator
    with pytest.raises(TypeMismatch):
        ev.compare(CompareOp.EQ, ev.encrypt(1, DataType.UINT16), ev.encrypt(1, DataType.UINT32))


def test_select_picks_branch(ledger):
    ev = ledger.evaluator
    yes = ev.encrypt(1, DataType.UINT32)
    no = ev.encrypt(2, DataType.UINT32)
    assert reveal(ledger, u32=ev.select(ev.encrypt(True, DataType.BOOL), yes, no)) == {"u32": 1}
    assert reveal(ledger, u32=ev.select(ev.encrypt(False, DataType.BOOL), yes, no)) == {"u32": 2}


def test_select_requires_bool_condition_and_matching_branches(ledger):
    ev = ledger.evaluator
    with pytest.raises(TypeMismatch):
        ev.select(
            ev.encrypt(1, DataType.UINT8),
            ev.encrypt(1, DataType.UINT8),
            ev.encrypt(2, DataType.UINT8),
        )
    with pytest.raises(TypeMismatch):
        ev.select(
            ev.encrypt(True, DataType.BOOL),
            ev.encrypt(1, DataType.UINT8),
            ev.encrypt(2, DataType.UINT16),
        )


def test_encrypt_rejects_out_of_range_plaintext(ledger):
    with pytest.raises(TypeMismatch):
        ledger.encrypt(256, DataType.UINT8)
    with pytest.raises(TypeMismatch):
        ledger.encrypt(-1, DataType.UINT32)
    with pytest.raises(TypeMismatch):
        ledger.encrypt("not an address", DataType.ADDRESS)


def test_encrypted_value_is_immutable(ledger):
    value = ledger.encrypt(5, DataType.UINT32)
    with pytest.raises(ValidationError):
        value.handle = "other"


def test_encrypted_value_repr_hides_ciphertext(ledger):
    value = ledger.encrypt(5, DataType.UINT32)
    assert "ciphertext" not in repr(value)


def test_tampered_ciphertext_is_a_backend_failure(ledger):
    ev = ledger.evaluator
    value = ev.encrypt(5, DataType.UINT32)
    tampered = value.model_copy(
        update={"ciphertext": value.ciphertext[:-1] + bytes([value.ciphertext[-1] ^ 1])}
    )
    with pytest.raises(BackendFailure):
        ev.add(tampered, ev.encrypt(1, DataType.UINT32))


def test_value_sealed_under_another_key_is_a_backend_failure(ledger, logger):
    foreign = HomomorphicEvaluator(TEECryptoBackend(logger, bytes(32)), logger)
    value = foreign.encrypt(5, DataType.UINT32)
    with pytest.raises(BackendFailure):
        ledger.evaluator.add(value, ledger.encrypt(1, DataType.UINT32))


def test_retyped_ciphertext_is_a_backend_failure(ledger):
    ev = ledger.evaluator
    value = ev.encrypt(5, DataType.UINT32)
    retyped = value.model_copy(update={"data_type": DataType.UINT16})
    with pytest.raises(BackendFailure):
        ev.add(retyped, ev.encrypt(1, DataType.UINT16))
