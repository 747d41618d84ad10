"""Implements the Storage interface and the in-memory MemoryStorage provider."""

from __future__ import annotations

from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterator, overload


class Storage(ABC):
    """The storage interface class defines the methods that any storage provider
    class must implement:
    - get -> return the value stored for the given key.
    - put -> store the value for a new key.
    - update -> replace the value stored for an existing key.
    - remove -> remove the value stored for the given key.
    - commit -> flush pending changes to the provider.

    Keys and values are str-str or bytes-bytes pairs. The provider can be a
    process local dictionary, a file, a database, etc.
    """

    __slots__ = ()

    @overload
    def check(self, key: bytes) -> bool: ...
    @overload
    def check(self, key: str) -> bool: ...
    def check(self, key: str | bytes) -> bool:
        """Check if the key exists in the storage provider."""
        try:
            self.get(key)
            return True
        except KeyError:
            return False

    @overload
    def get(self, key: bytes) -> bytes: ...
    @overload
    def get(self, key: str) -> str: ...
    def get(self, key: str | bytes) -> str | bytes:
        """Return the value stored in the storage provider for the given key.

        Raises:
            KeyError: If the key is not found in the storage provider.
            UnicodeDecodeError: If a str key maps to a value that is not valid unicode.
        """
        if isinstance(key, str):
            return (self._get(key.encode())).decode()
        return self._get(key)

    @overload
    def put(self, key: bytes, value: bytes) -> None: ...
    @overload
    def put(self, key: str, value: str) -> None: ...
    def put(self, key: str | bytes, value: str | bytes) -> None:
        """Store the value for the given key.

        Raises:
            KeyError: If the key is already present in the storage provider.
            ValueError: If the key-value pair is not of str-str or bytes-bytes type.
        """
        self._put(*self._encode_pair(key, value))

    @overload
    def update(self, key: bytes, value: bytes) -> None: ...
    @overload
    def update(self, key: str, value: str) -> None: ...
    def update(self, key: str | bytes, value: str | bytes) -> None:
        """Replace the value stored for the given key.

        Raises:
            KeyError: If the key is not found in the storage provider.
            ValueError: If the key-value pair is not of str-str or bytes-bytes type.
        """
        self._update(*self._encode_pair(key, value))

    @overload
    def remove(self, key: bytes) -> None: ...
    @overload
    def remove(self, key: str) -> None: ...
    def remove(self, key: str | bytes) -> None:
        """Remove the value stored for the given key.

        Raises:
            KeyError: If the key is not found in the storage provider.
        """
        if isinstance(key, str):
            return self._remove(key.encode())
        return self._remove(key)

    def keys(self, prefix: str = "") -> Iterator[str]:
        """Iterate over the str keys starting with the given prefix."""
        encoded_prefix = prefix.encode()
        for key in self._keys():
            if key.startswith(encoded_prefix):
                yield key.decode()

    def commit(self) -> None:
        """Commit the pending changes to the storage provider."""
        self._commit()

    def _encode_pair(self, key: str | bytes, value: str | bytes) -> tuple[bytes, bytes]:
        if isinstance(key, str):
            if isinstance(value, str):
                return key.encode(), value.encode()
            raise ValueError("Value should be of type str")
        if isinstance(value, bytes):
            return key, value
        raise ValueError("Value should be of type bytes")

    @abstractmethod
    def _get(self, key: bytes) -> bytes:
        """Must raise a KeyError if the key is not found."""
        pass

    @abstractmethod
    def _put(self, key: bytes, value: bytes) -> None:
        """Must raise a KeyError if the key is already present."""
        pass

    @abstractmethod
    def _update(self, key: bytes, value: bytes) -> None:
        """Must raise a KeyError if the key is not found."""
        pass

    @abstractmethod
    def _remove(self, key: bytes) -> None:
        """Must raise a KeyError if the key is not found."""
        pass

    @abstractmethod
    def _keys(self) -> Iterator[bytes]:
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass


class MemoryStorage(Storage):
    """Process local storage provider.

    Every operation holds the provider lock, so single key operations are atomic.
    Durability comes from the ledger event log, not from this provider.
    """

    __slots__ = ("_data", "_lock")

    _data: Dict[bytes, bytes]
    _lock: Lock

    def __init__(self) -> None:
        self._data = {}
        self._lock = Lock()

    def _get(self, key: bytes) -> bytes:
        with self._lock:
            if key not in self._data:
                raise KeyError("Key not found")
            return self._data[key]

    def _put(self, key: bytes, value: bytes) -> None:
        with self._lock:
            if key in self._data:
                raise KeyError("Key already present")
            self._data[key] = value

    def _update(self, key: bytes, value: bytes) -> None:
        with self._lock:
            if key not in self._data:
                raise KeyError("Key not found")
            self._data[key] = value

    def _remove(self, key: bytes) -> None:
        with self._lock:
            if key not in self._data:
                raise KeyError("Key not found")
            del self._data[key]

    def _keys(self) -> Iterator[bytes]:
        with self._lock:
            snapshot = list(self._data.keys())
        return iter(snapshot)

    def _commit(self) -> None:
        pass
