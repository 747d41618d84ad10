from __future__ import annotations

from threading import RLock
from typing import Dict, List

from openvector_confidential_ledger.common.errors import (
    InvalidTransition,
    MissingField,
    NotFound,
    TypeMismatch,
    UnknownField,
)
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.storage import Storage
from openvector_confidential_ledger.common.types import EncryptedValue, RecordSchema


class EncryptedValueStore:
    """Holds the encrypted fields of every record, keyed by (record, field).

    The layout in the underlying storage is:
    - record:<id>:schema -> json of the record schema
    - record:<id>:field:<name> -> json of the current EncryptedValue
    - record:<id>:sealed -> present once the record accepts no more writes

    Nothing stored here is plaintext.
    """

    __slots__ = ("_storage", "_logger", "_lock")

    _storage: Storage
    _logger: Logger
    _lock: RLock

    def __init__(self, storage: Storage, logger: Logger):
        self._storage = storage
        self._logger = logger
        self._lock = RLock()

    def create(
        self,
        record_id: int,
        schema: RecordSchema,
        fields: Dict[str, EncryptedValue],
    ) -> None:
        """Stores a new record with a value for every field of its schema.

        Raises:
            UnknownField: If a field is not declared in the schema.
            MissingField: If a declared field has no value.
            TypeMismatch: If a value's type differs from the declared one.
            InvalidTransition: If the record already exists.
        """
        for name, value in fields.items():
            self._check_field(schema, name, value)
        missing = [name for name in schema.fields if name not in fields]
        if missing:
            raise MissingField(f"Missing fields {missing} for schema {schema.name}")

        with self._lock:
            if self._storage.check(self._schema_key(record_id)):
                raise InvalidTransition(f"Record {record_id} already exists")
            self._storage.put(self._schema_key(record_id), schema.model_dump_json())
            for name, value in fields.items():
                self._storage.put(self._field_key(record_id, name), value.model_dump_json())
            self._storage.commit()
        self._logger.debug(
            LogMessage(
                message="Record stored",
                structured_log_message_data={
                    "record_id": record_id,
                    "schema": schema.name,
                },
            )
        )

    def put(self, record_id: int, field: str, value: EncryptedValue) -> None:
        """Atomically replaces the handle stored for a field.

        Raises:
            NotFound: If the record does not exist.
            UnknownField: If the field is not declared in the record's schema.
            TypeMismatch: If the value's type differs from the declared one.
            InvalidTransition: If the record is sealed.
        """
        with self._lock:
            schema = self.schema(record_id)
            self._check_field(schema, field, value)
            if self.is_sealed(record_id):
                raise InvalidTransition(f"Record {record_id} accepts no more field writes")
            self._storage.update(self._field_key(record_id, field), value.model_dump_json())
            self._storage.commit()
        self._logger.debug(
            LogMessage(
                message="Field updated",
                structured_log_message_data={
                    "record_id": record_id,
                    "field_name": field,
                    "handle": value.handle,
                },
            )
        )

    def get(self, record_id: int, field: str) -> EncryptedValue:
        """Returns the current handle of a field.

        Raises:
            NotFound: If the record or the field does not exist.
        """
        try:
            data = self._storage.get(self._field_key(record_id, field))
        except KeyError as e:
            raise NotFound(f"No field {field} on record {record_id}") from e
        return EncryptedValue.model_validate_json(data)

    def schema(self, record_id: int) -> RecordSchema:
        try:
            data = self._storage.get(self._schema_key(record_id))
        except KeyError as e:
            raise NotFound(f"Record {record_id} not found") from e
        return RecordSchema.model_validate_json(data)

    def exists(self, record_id: int) -> bool:
        return self._storage.check(self._schema_key(record_id))

    def fields(self, record_id: int) -> Dict[str, EncryptedValue]:
        schema = self.schema(record_id)
        return {name: self.get(record_id, name) for name in schema.fields}

    def seal(self, record_id: int) -> None:
        """Marks the record as accepting no more field writes, idempotent."""
        with self._lock:
            self.schema(record_id)
            if not self.is_sealed(record_id):
                self._storage.put(self._sealed_key(record_id), "1")
                self._storage.commit()

    def is_sealed(self, record_id: int) -> bool:
        return self._storage.check(self._sealed_key(record_id))

    def record_ids(self) -> List[int]:
        ids = set()
        for key in self._storage.keys("record:"):
            ids.add(int(key.split(":")[1]))
        return sorted(ids)

    def _check_field(self, schema: RecordSchema, field: str, value: EncryptedValue) -> None:
        spec = schema.fields.get(field)
        if spec is None:
            raise UnknownField(f"Field {field} is not declared in schema {schema.name}")
        if spec.data_type != value.data_type:
            raise TypeMismatch(
                f"Field {field} is declared {spec.data_type}, got {value.data_type}"
            )

    def _schema_key(self, record_id: int) -> str:
        return f"record:{record_id}:schema"

    def _field_key(self, record_id: int, field: str) -> str:
        return f"record:{record_id}:field:{field}"

    def _sealed_key(self, record_id: int) -> str:
        return f"record:{record_id}:sealed"
