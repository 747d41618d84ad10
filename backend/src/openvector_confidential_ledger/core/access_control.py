from __future__ import annotations

from threading import RLock
import time
from typing import Dict, List, Set, Tuple
import uuid

from openvector_confidential_ledger.common.errors import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    Unauthorized,
)
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.types import Grant, GrantKind
from openvector_confidential_ledger.core.event_log import EventSink, discard_event

# higher is stronger, a delegate may never issue more than it holds
GRANT_KIND_RANK: Dict[GrantKind, int] = {
    GrantKind.COMPUTE_ONLY: 0,
    GrantKind.READ_ONCE: 1,
    GrantKind.READ_PERSISTENT: 2,
}

GrantKey = Tuple[str, int, str]


class AccessControlLedger:
    """Maps (principal, record, field) to the grants that principal holds.

    Grants are monotonic: a revoked or consumed grant id is retired for good, a
    later grant for the same tuple is a new grant with a new id. Every check
    runs against the current state under the ledger lock, so a revoke ordered
    before a disclosure always blocks it.
    """

    __slots__ = (
        "_owners",
        "_terminal",
        "_grants",
        "_index",
        "_retired",
        "_lock",
        "_logger",
        "_event_sink",
    )

    _owners: Dict[int, str]
    _terminal: Set[int]
    _grants: Dict[str, Grant]
    _index: Dict[GrantKey, List[str]]
    _retired: Set[str]
    _lock: RLock
    _logger: Logger
    _event_sink: EventSink

    def __init__(self, logger: Logger, event_sink: EventSink = discard_event):
        self._owners = {}
        self._terminal = set()
        self._grants = {}
        self._index = {}
        self._retired = set()
        self._lock = RLock()
        self._logger = logger
        self._event_sink = event_sink

    def register_record(self, record_id: int, creator: str) -> None:
        with self._lock:
            if record_id in self._owners:
                raise InvalidTransition(f"Record {record_id} already registered")
            self._owners[record_id] = creator

    def mark_terminal(self, record_id: int) -> None:
        """Once terminal only read grants may still be issued for the record."""
        with self._lock:
            self.owner(record_id)
            self._terminal.add(record_id)

    def owner(self, record_id: int) -> str:
        with self._lock:
            if record_id not in self._owners:
                raise NotFound(f"Record {record_id} not found")
            return self._owners[record_id]

    def grant(
        self,
        issuer: str,
        principal: str,
        record_id: int,
        field: str,
        kind: GrantKind,
        delegable: bool = False,
    ) -> Grant:
        """Issues a grant, a duplicate of an active grant is a no-op.

        Raises:
            NotFound: If the record is not registered.
            Unauthorized: If the issuer is neither the creator nor a delegate
                holding at least the requested kind.
            InvalidTransition: If a compute grant is requested on a terminal record.
        """
        with self._lock:
            owner = self.owner(record_id)
            if issuer != owner:
                self._check_delegation(issuer, record_id, field, kind)
            if kind == GrantKind.COMPUTE_ONLY and record_id in self._terminal:
                raise InvalidTransition(
                    f"Record {record_id} is terminal, only read grants can be issued"
                )
            for existing in self._active(principal, record_id, field):
                if existing.kind == kind and existing.delegable == delegable:
                    return existing

            grant = Grant(
                grant_id=uuid.uuid4().hex,
                issuer=issuer,
                principal=principal,
                record_id=record_id,
                field=field,
                kind=kind,
                delegable=delegable,
                issued_at=time.time(),
            )
            self._add(grant)
            self._event_sink(
                "grant",
                {
                    "issuer": issuer,
                    "principal": principal,
                    "record_id": record_id,
                    "field": field,
                    "kind": kind.value,
                    "delegable": delegable,
                },
                {"grant_issued": grant.model_dump(mode="json")},
            )
        self._logger.info(
            LogMessage(
                message="Grant issued",
                structured_log_message_data={
                    "grant_id": grant.grant_id,
                    "issuer": issuer,
                    "principal": principal,
                    "record_id": record_id,
                    "field_name": field,
                    "kind": kind.value,
                },
            )
        )
        return grant

    def revoke(self, issuer: str, principal: str, record_id: int, field: str) -> List[Grant]:
        """Revokes the principal's grants on the field, idempotent.

        The creator may revoke any grant, a delegate only the grants it issued.

        Raises:
            NotFound: If the record is not registered.
            Unauthorized: If active grants exist but the issuer may revoke none of them.
        """
        with self._lock:
            owner = self.owner(record_id)
            active = self._active(principal, record_id, field)
            revocable = [g for g in active if issuer == owner or g.issuer == issuer]
            if active and not revocable:
                raise Unauthorized(
                    f"{issuer} may not revoke grants of {principal} on {record_id}.{field}"
                )
            for grant in revocable:
                self._retire(grant.grant_id)
            if revocable:
                self._event_sink(
                    "revoke",
                    {
                        "issuer": issuer,
                        "principal": principal,
                        "record_id": record_id,
                        "field": field,
                    },
                    {"grants_revoked": [g.grant_id for g in revocable]},
                )
        if revocable:
            self._logger.info(
                LogMessage(
                    message="Grants revoked",
                    structured_log_message_data={
                        "issuer": issuer,
                        "principal": principal,
                        "record_id": record_id,
                        "field_name": field,
                        "count": len(revocable),
                    },
                )
            )
        return revocable

    def check(self, principal: str, record_id: int, field: str) -> GrantKind | None:
        """Returns the strongest kind the principal currently holds, None if none."""
        with self._lock:
            kinds = [g.kind for g in self._active(principal, record_id, field)]
        if not kinds:
            return None
        return max(kinds, key=lambda kind: GRANT_KIND_RANK[kind])

    def consume_for_disclosure(self, principal: str, record_id: int, field: str) -> Grant:
        """Checks for a read grant and consumes it if it is read-once, in one step.

        A persistent grant is preferred so a read-once grant is not spent needlessly.

        Raises:
            PermissionDenied: If the principal holds no read grant.
        """
        with self._lock:
            active = self._active(principal, record_id, field)
            persistent = [g for g in active if g.kind == GrantKind.READ_PERSISTENT]
            if persistent:
                return persistent[0]
            once = [g for g in active if g.kind == GrantKind.READ_ONCE]
            if not once:
                raise PermissionDenied(
                    f"{principal} holds no read grant on {record_id}.{field}"
                )
            grant = once[0]
            self._retire(grant.grant_id)
            self._event_sink(
                "consume",
                {"principal": principal, "record_id": record_id, "field": field},
                {"grant_consumed": grant.grant_id},
            )
            return grant

    def may_issue(self, issuer: str, record_id: int, field: str, kind: GrantKind) -> bool:
        """Whether the issuer could currently grant the kind on the field."""
        with self._lock:
            if issuer == self.owner(record_id):
                return True
            try:
                self._check_delegation(issuer, record_id, field, kind)
            except Unauthorized:
                return False
            return True

    def grants_for(self, record_id: int) -> List[Grant]:
        """Active grants on a record, for audit."""
        with self._lock:
            return [g for g in self._grants.values() if g.record_id == record_id]

    def restore_grant(self, grant: Grant) -> None:
        """Replays a grant_issued delta, a retired grant id is never revived."""
        with self._lock:
            if grant.grant_id in self._retired or grant.grant_id in self._grants:
                return
            self._add(grant)

    def restore_retirement(self, grant_id: str) -> None:
        with self._lock:
            self._retire(grant_id)

    def _check_delegation(
        self, issuer: str, record_id: int, field: str, kind: GrantKind
    ) -> None:
        for held in self._active(issuer, record_id, field):
            if held.delegable and GRANT_KIND_RANK[held.kind] >= GRANT_KIND_RANK[kind]:
                return
        raise Unauthorized(
            f"{issuer} is neither the creator of record {record_id} nor a delegate on {field}"
        )

    def _active(self, principal: str, record_id: int, field: str) -> List[Grant]:
        ids = self._index.get((principal, record_id, field), [])
        return [self._grants[grant_id] for grant_id in ids]

    def _add(self, grant: Grant) -> None:
        self._grants[grant.grant_id] = grant
        self._index.setdefault(
            (grant.principal, grant.record_id, grant.field), []
        ).append(grant.grant_id)

    def _retire(self, grant_id: str) -> None:
        self._retired.add(grant_id)
        grant = self._grants.pop(grant_id, None)
        if grant is None:
            return
        key = (grant.principal, grant.record_id, grant.field)
        self._index[key].remove(grant_id)
        if not self._index[key]:
            del self._index[key]
