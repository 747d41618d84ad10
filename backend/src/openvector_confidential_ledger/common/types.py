from __future__ import annotations

from base64 import b64decode, b64encode
import binascii
from enum import StrEnum
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

Plaintext = int | bool | str


class DataType(StrEnum):
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    BOOL = "bool"
    # 160 bit account identifier
    ADDRESS = "address"


_BIT_WIDTHS: Dict[DataType, int] = {
    DataType.UINT8: 8,
    DataType.UINT16: 16,
    DataType.UINT32: 32,
    DataType.UINT64: 64,
    DataType.BOOL: 1,
    DataType.ADDRESS: 160,
}


def bit_width(data_type: DataType) -> int:
    return _BIT_WIDTHS[data_type]


def is_integer(data_type: DataType) -> bool:
    return data_type in (
        DataType.UINT8,
        DataType.UINT16,
        DataType.UINT32,
        DataType.UINT64,
    )


class CompareOp(StrEnum):
    LE = "le"
    LT = "lt"
    GE = "ge"
    GT = "gt"
    EQ = "eq"


class GrantKind(StrEnum):
    READ_ONCE = "read_once"
    READ_PERSISTENT = "read_persistent"
    # allows computing on the value, never reading it
    COMPUTE_ONLY = "compute_only"


READ_GRANT_KINDS = (GrantKind.READ_ONCE, GrantKind.READ_PERSISTENT)


class RecordState(StrEnum):
    CREATED = "created"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (RecordState.COMPLETED, RecordState.CANCELLED)


class ThresholdState(StrEnum):
    OPEN = "open"
    SATISFIED = "satisfied"
    DISCLOSED = "disclosed"


class PayoutStatus(StrEnum):
    NONE = "none"
    SETTLED = "settled"
    FAILED = "failed"
    # submitted, outcome not known yet
    PENDING = "pending"


def decode_base64_bytes_field(value: Any, field_name_for_error: str) -> bytes:
    if isinstance(value, str):
        try:
            return b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(
                f"Field '{field_name_for_error}' has invalid base64 data: {e}"
            )
    elif isinstance(value, bytes):
        return value
    raise TypeError(
        f"Field '{field_name_for_error}' must be a base64 encoded string or bytes, "
        f"received type {type(value).__name__}"
    )


class EncryptedValue(BaseModel):
    """Opaque handle over a ciphertext with a declared logical type.

    There is intentionally no way to get the plaintext out of this object,
    only the decryption broker can ask the backend to decrypt it.
    """

    model_config = ConfigDict(frozen=True)

    handle: str
    data_type: DataType
    ciphertext: bytes = Field(repr=False)

    @field_validator("ciphertext", mode="before")
    @classmethod
    def validate_ciphertext(cls, value: bytes | str) -> bytes:
        return decode_base64_bytes_field(value, "ciphertext")

    @field_serializer("ciphertext")
    def serialize_ciphertext(self, value: bytes) -> str:
        return b64encode(value).decode("ascii")


class FieldSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_type: DataType
    # input fields are supplied by the creator, the others are computed by the engine
    input: bool = True
    # whether a non creator may get a read grant before the record is terminal
    pre_terminal_disclosure: bool = True


class RecordSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    fields: Dict[str, FieldSpec]

    def input_fields(self) -> List[str]:
        return [name for name, spec in self.fields.items() if spec.input]

    def computed_fields(self) -> List[str]:
        return [name for name, spec in self.fields.items() if not spec.input]


class RecordInfo(BaseModel):
    """Plaintext metadata of a record, never contains secret data."""

    model_config = ConfigDict(frozen=True)

    record_id: int
    schema_name: str
    creator: str
    created_at: float
    state: RecordState
    assignee: str | None = None
    payout_status: PayoutStatus = PayoutStatus.NONE
    # tx hash or other gateway reference of a payout whose outcome is unknown
    payout_reference: str | None = None
    # candidates whose acceptance decision came out false, each is evaluated once
    rejected_candidates: Tuple[str, ...] = ()


class Grant(BaseModel):
    model_config = ConfigDict(frozen=True)

    grant_id: str
    issuer: str
    principal: str
    record_id: int
    field: str
    kind: GrantKind
    delegable: bool = False
    issued_at: float


class DisclosureRequest(BaseModel):
    """Threshold disclosure of one field, votes map principal to approval."""

    data_id: str
    requester: str
    record_id: int
    field: str
    threshold: int
    eligible_voters: List[str]
    votes: Dict[str, bool] = Field(default_factory=dict)
    state: ThresholdState = ThresholdState.OPEN

    def approvals(self) -> int:
        return sum(1 for approve in self.votes.values() if approve)


class AuthorizationProof(BaseModel):
    model_config = ConfigDict(frozen=True)

    handle: str
    principal: str
    purpose: str
    mac: bytes

    @field_validator("mac", mode="before")
    @classmethod
    def validate_mac(cls, value: bytes | str) -> bytes:
        return decode_base64_bytes_field(value, "mac")


class LedgerEvent(BaseModel):
    """One entry of the append-only ledger event log.

    The delta carries enough to rebuild every component store by replay, it
    never carries the plaintext of a secret field.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: float
    operation: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    delta: Dict[str, Any] = Field(default_factory=dict)
