from __future__ import annotations

from typing import Callable, TypeVar

from openvector_confidential_ledger.common.errors import BackendFailure, TypeMismatch
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.types import (
    CompareOp,
    DataType,
    EncryptedValue,
    Plaintext,
    is_integer,
)
from openvector_confidential_ledger.core.crypto_backend_interface import ICryptoBackend

T = TypeVar("T")

ORDERING_OPS = (CompareOp.LE, CompareOp.LT, CompareOp.GE, CompareOp.GT)


class HomomorphicEvaluator:
    """Type checked front of the backend's homomorphic operations.

    All operations are pure: they never mutate their operands and return a new
    handle. The evaluator holds no decryption capability.
    """

    __slots__ = ("_backend", "_logger")

    _backend: ICryptoBackend
    _logger: Logger

    def __init__(self, backend: ICryptoBackend, logger: Logger):
        self._backend = backend
        self._logger = logger

    def encrypt(self, plaintext: Plaintext, data_type: DataType) -> EncryptedValue:
        """Encrypts a caller supplied input.

        Raises:
            TypeMismatch: If the plaintext does not fit the declared type.
            BackendFailure: If the backend fails.
        """
        try:
            return self._backend.encrypt_input(plaintext, data_type)
        except ValueError as e:
            raise TypeMismatch(f"Plaintext does not fit {data_type}: {e}") from e
        except Exception as e:
            raise self._backend_failure("encrypt", e) from e

    def constant(self, plaintext: Plaintext, data_type: DataType) -> EncryptedValue:
        """Trivially encrypted constant, e.g. the encrypted one used for counters."""
        return self.encrypt(plaintext, data_type)

    def add(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        if not is_integer(a.data_type) or a.data_type != b.data_type:
            raise TypeMismatch(
                f"add requires integers of matching width, got {a.data_type} and {b.data_type}"
            )
        return self._call("add", lambda: self._backend.add(a, b))

    def compare(
        self, op: CompareOp, a: EncryptedValue, b: EncryptedValue
    ) -> EncryptedValue:
        if a.data_type != b.data_type:
            raise TypeMismatch(
                f"compare requires operands of the same type, got {a.data_type} and {b.data_type}"
            )
        if op in ORDERING_OPS and not is_integer(a.data_type):
            raise TypeMismatch(f"{op} is only defined on integers, got {a.data_type}")
        return self._call("compare", lambda: self._backend.compare(op, a, b))

    def select(
        self,
        cond: EncryptedValue,
        if_true: EncryptedValue,
        if_false: EncryptedValue,
    ) -> EncryptedValue:
        if cond.data_type != DataType.BOOL:
            raise TypeMismatch(f"select condition must be bool, got {cond.data_type}")
        if if_true.data_type != if_false.data_type:
            raise TypeMismatch(
                f"select branches must share a type, got {if_true.data_type} and {if_false.data_type}"
            )
        return self._call(
            "select", lambda: self._backend.select(cond, if_true, if_false)
        )

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except Exception as e:
            raise self._backend_failure(operation, e) from e

    def _backend_failure(self, operation: str, error: Exception) -> BackendFailure:
        self._logger.error(
            LogMessage(
                message="Backend failure during homomorphic evaluation",
                structured_log_message_data={"operation": operation},
                error=error,
            )
        )
        return BackendFailure(f"Backend failed during {operation}: {error}")
