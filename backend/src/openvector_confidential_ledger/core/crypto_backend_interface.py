from __future__ import annotations

from abc import ABC, abstractmethod

from Crypto.Hash import HMAC, SHA256
from web3 import Web3

from openvector_confidential_ledger.common.types import (
    AuthorizationProof,
    CompareOp,
    DataType,
    EncryptedValue,
    Plaintext,
    bit_width,
    is_integer,
)


def encode_plaintext(plaintext: Plaintext, data_type: DataType) -> int:
    """Maps a typed plaintext to the unsigned integer the backend encrypts.

    Raises:
        ValueError: If the plaintext does not fit the declared type.
    """
    if data_type == DataType.BOOL:
        if isinstance(plaintext, bool):
            return int(plaintext)
        if isinstance(plaintext, int) and plaintext in (0, 1):
            return plaintext
        raise ValueError(f"Invalid bool plaintext {plaintext!r}")
    if data_type == DataType.ADDRESS:
        if not isinstance(plaintext, str) or not Web3.is_address(plaintext):
            raise ValueError(f"Invalid address plaintext {plaintext!r}")
        return int(plaintext, 16)
    if not is_integer(data_type):
        raise ValueError(f"Invalid data type {data_type}")
    if isinstance(plaintext, bool) or not isinstance(plaintext, int):
        raise ValueError(f"Invalid integer plaintext {plaintext!r}")
    if plaintext < 0 or plaintext >= 1 << bit_width(data_type):
        raise ValueError(f"Plaintext out of range for {data_type}")
    return plaintext


def decode_plaintext(raw: int, data_type: DataType) -> Plaintext:
    if data_type == DataType.BOOL:
        return raw != 0
    if data_type == DataType.ADDRESS:
        return Web3.to_checksum_address(f"0x{raw:040x}")
    return raw


def ciphertext_digest(value: EncryptedValue) -> bytes:
    return SHA256.new(value.ciphertext).digest()


class DecryptionCapability:
    """Right to ask the backend for a decryption.

    The backend hands out exactly one capability; whoever holds it is the only
    component able to produce authorization proofs the backend accepts.
    """

    __slots__ = ("_secret",)

    _secret: bytes

    def __init__(self, secret: bytes):
        self._secret = secret

    def authorize(
        self, value: EncryptedValue, principal: str, purpose: str
    ) -> AuthorizationProof:
        mac = HMAC.new(self._secret, digestmod=SHA256)
        mac.update(proof_message(value, principal, purpose))
        return AuthorizationProof(
            handle=value.handle,
            principal=principal,
            purpose=purpose,
            mac=mac.digest(),
        )


def proof_message(value: EncryptedValue, principal: str, purpose: str) -> bytes:
    return b"|".join(
        (
            value.handle.encode(),
            principal.encode(),
            purpose.encode(),
            ciphertext_digest(value),
        )
    )


class ICryptoBackend(ABC):
    """Trusted, synchronous homomorphic encryption capability.

    Implementations raise whatever their primitives raise; the evaluator and the
    decryption broker wrap those into BackendFailure and never retry.
    """

    @abstractmethod
    def encrypt_input(self, plaintext: Plaintext, data_type: DataType) -> EncryptedValue:
        """Encrypt a plaintext under the network key"""
        pass

    @abstractmethod
    def add(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        """Homomorphic addition modulo 2**width"""
        pass

    @abstractmethod
    def compare(
        self, op: CompareOp, a: EncryptedValue, b: EncryptedValue
    ) -> EncryptedValue:
        """Homomorphic comparison, the result is an encrypted bool"""
        pass

    @abstractmethod
    def select(
        self,
        cond: EncryptedValue,
        if_true: EncryptedValue,
        if_false: EncryptedValue,
    ) -> EncryptedValue:
        """Homomorphic multiplexer, never branches on the plaintext condition outside the backend"""
        pass

    @abstractmethod
    def issue_decryption_capability(self) -> DecryptionCapability:
        """Issue the single decryption capability, fails on the second call"""
        pass

    @abstractmethod
    def decrypt(self, value: EncryptedValue, proof: AuthorizationProof) -> int:
        """Decrypt the value if the proof was produced by the decryption capability"""
        pass
