from __future__ import annotations

from threading import Lock
import uuid

from Crypto.Cipher import AES
from Crypto.Hash import HMAC, SHA256
from Crypto.Random import get_random_bytes
from typing_extensions import override

from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.types import (
    AuthorizationProof,
    CompareOp,
    DataType,
    EncryptedValue,
    Plaintext,
    bit_width,
    is_integer,
)
from openvector_confidential_ledger.core.crypto_backend_interface import (
    DecryptionCapability,
    ICryptoBackend,
    encode_plaintext,
    proof_message,
)

NONCE_SIZE = 12
TAG_SIZE = 16
# every plaintext is padded to the widest type so ciphertext length leaks nothing
PLAINTEXT_SIZE = 32


class TEECryptoBackend(ICryptoBackend):
    """Reference backend evaluating inside a trusted execution environment.

    Ciphertexts are AES-GCM encryptions under a key that never leaves this
    object, with the declared data type bound as associated data. Homomorphic
    operations open the operands, compute and seal a fresh ciphertext, the
    same way the coprocessor evaluates TEE requests.
    """

    __slots__ = (
        "_key",
        "_capability_secret",
        "_capability_issued",
        "_capability_lock",
        "_logger",
    )

    _key: bytes
    _capability_secret: bytes
    _capability_issued: bool
    _capability_lock: Lock
    _logger: Logger

    def __init__(self, logger: Logger, key: bytes | None = None):
        if key is not None and len(key) != 32:
            raise ValueError("TEE backend key must be 32 bytes")
        self._key = key if key is not None else get_random_bytes(32)
        self._capability_secret = get_random_bytes(32)
        self._capability_issued = False
        self._capability_lock = Lock()
        self._logger = logger

    @override
    def encrypt_input(self, plaintext: Plaintext, data_type: DataType) -> EncryptedValue:
        return self._seal(encode_plaintext(plaintext, data_type), data_type)

    @override
    def add(self, a: EncryptedValue, b: EncryptedValue) -> EncryptedValue:
        if a.data_type != b.data_type or not is_integer(a.data_type):
            raise ValueError("Invalid operands for add")
        result = (self._open(a) + self._open(b)) % (1 << bit_width(a.data_type))
        return self._seal(result, a.data_type)

    @override
    def compare(
        self, op: CompareOp, a: EncryptedValue, b: EncryptedValue
    ) -> EncryptedValue:
        if a.data_type != b.data_type:
            raise ValueError("Invalid operands for compare")
        dec_a = self._open(a)
        dec_b = self._open(b)
        if op == CompareOp.LE:
            result = dec_a <= dec_b
        elif op == CompareOp.LT:
            result = dec_a < dec_b
        elif op == CompareOp.GE:
            result = dec_a >= dec_b
        elif op == CompareOp.GT:
            result = dec_a > dec_b
        elif op == CompareOp.EQ:
            result = dec_a == dec_b
        else:
            raise ValueError(f"Invalid compare operation {op}")
        return self._seal(int(result), DataType.BOOL)

    @override
    def select(
        self,
        cond: EncryptedValue,
        if_true: EncryptedValue,
        if_false: EncryptedValue,
    ) -> EncryptedValue:
        if cond.data_type != DataType.BOOL or if_true.data_type != if_false.data_type:
            raise ValueError("Invalid operands for select")
        # both branches are opened regardless of the condition
        dec_cond = self._open(cond)
        dec_true = self._open(if_true)
        dec_false = self._open(if_false)
        mask = -dec_cond
        result = (dec_true & mask) | (dec_false & ~mask)
        return self._seal(result, if_true.data_type)

    @override
    def issue_decryption_capability(self) -> DecryptionCapability:
        with self._capability_lock:
            if self._capability_issued:
                self._logger.error("Decryption capability requested twice")
                raise PermissionError("Decryption capability already issued")
            self._capability_issued = True
        self._logger.info("Decryption capability issued")
        return DecryptionCapability(self._capability_secret)

    @override
    def decrypt(self, value: EncryptedValue, proof: AuthorizationProof) -> int:
        if proof.handle != value.handle:
            raise PermissionError("Authorization proof is bound to another value")
        mac = HMAC.new(self._capability_secret, digestmod=SHA256)
        mac.update(proof_message(value, proof.principal, proof.purpose))
        # raises ValueError on mismatch
        mac.verify(proof.mac)
        self._logger.debug(
            LogMessage(
                message="Decrypting value",
                structured_log_message_data={
                    "handle": value.handle,
                    "principal": proof.principal,
                    "purpose": proof.purpose,
                },
            )
        )
        return self._open(value)

    def _seal(self, value: int, data_type: DataType) -> EncryptedValue:
        nonce = get_random_bytes(NONCE_SIZE)
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
        cipher.update(data_type.value.encode())
        ciphertext, tag = cipher.encrypt_and_digest(
            value.to_bytes(PLAINTEXT_SIZE, byteorder="big")
        )
        return EncryptedValue(
            handle=uuid.uuid4().hex,
            data_type=data_type,
            ciphertext=nonce + tag + ciphertext,
        )

    def _open(self, value: EncryptedValue) -> int:
        data = value.ciphertext
        if len(data) != NONCE_SIZE + TAG_SIZE + PLAINTEXT_SIZE:
            raise ValueError("Invalid ciphertext length")
        nonce = data[:NONCE_SIZE]
        tag = data[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
        cipher.update(value.data_type.value.encode())
        # raises ValueError if the ciphertext or its declared type was tampered with
        plaintext = cipher.decrypt_and_verify(data[NONCE_SIZE + TAG_SIZE :], tag)
        return int.from_bytes(plaintext, byteorder="big")
