from __future__ import annotations

from threading import RLock
from typing import Dict, List
import uuid

from openvector_confidential_ledger.common.errors import (
    BackendFailure,
    DuplicateVote,
    InvalidTransition,
    NotFound,
    Unauthorized,
)
from openvector_confidential_ledger.common.logger import LogMessage, Logger
from openvector_confidential_ledger.common.types import (
    DisclosureRequest,
    EncryptedValue,
    GrantKind,
    Plaintext,
    ThresholdState,
)
from openvector_confidential_ledger.core.access_control import AccessControlLedger
from openvector_confidential_ledger.core.crypto_backend_interface import (
    DecryptionCapability,
    ICryptoBackend,
    decode_plaintext,
)
from openvector_confidential_ledger.core.event_log import EventSink, discard_event
from openvector_confidential_ledger.core.value_store import EncryptedValueStore


class DecryptionBroker:
    """The one component holding the backend decryption capability.

    Every plaintext that leaves the engine goes through `disclose` (single
    authority, gated by the access control ledger) or through a threshold
    request that enough distinct voters approved.
    """

    __slots__ = (
        "_backend",
        "_capability",
        "_acl",
        "_store",
        "_logger",
        "_event_sink",
        "_lock",
        "_requests",
        "_pinned_values",
        "_results",
    )

    _backend: ICryptoBackend
    _capability: DecryptionCapability
    _acl: AccessControlLedger
    _store: EncryptedValueStore
    _logger: Logger
    _event_sink: EventSink
    _lock: RLock
    _requests: Dict[str, DisclosureRequest]
    # the handle voters are voting on, fixed when the request is opened
    _pinned_values: Dict[str, EncryptedValue]
    _results: Dict[str, Plaintext]

    def __init__(
        self,
        backend: ICryptoBackend,
        acl: AccessControlLedger,
        store: EncryptedValueStore,
        logger: Logger,
        event_sink: EventSink = discard_event,
    ):
        self._backend = backend
        self._acl = acl
        self._store = store
        self._logger = logger
        self._event_sink = event_sink
        self._lock = RLock()
        self._requests = {}
        self._pinned_values = {}
        self._results = {}
        try:
            self._capability = backend.issue_decryption_capability()
        except Exception as e:
            raise BackendFailure(f"Could not obtain the decryption capability: {e}") from e

    def disclose(self, principal: str, record_id: int, field: str) -> Plaintext:
        """Decrypts a field for a principal holding a read grant on it.

        A read-once grant is consumed in the same step as the check. If the
        backend then fails the grant stays consumed.

        Raises:
            NotFound: If the record or field does not exist.
            PermissionDenied: If the principal holds no read grant.
            BackendFailure: If the backend fails to decrypt.
        """
        value = self._store.get(record_id, field)
        grant = self._acl.consume_for_disclosure(principal, record_id, field)
        plaintext = self._decrypt(value, principal, "disclose")
        self._event_sink(
            "disclose",
            {"principal": principal, "record_id": record_id, "field": field},
            {
                "disclosed": {
                    "principal": principal,
                    "record_id": record_id,
                    "field": field,
                    "grant_id": grant.grant_id,
                    "grant_kind": grant.kind.value,
                    "handle": value.handle,
                }
            },
        )
        self._logger.info(
            LogMessage(
                message="Value disclosed",
                structured_log_message_data={
                    "principal": principal,
                    "record_id": record_id,
                    "field_name": field,
                    "grant_id": grant.grant_id,
                },
            )
        )
        return plaintext

    def request_disclosure(
        self,
        requester: str,
        record_id: int,
        field: str,
        threshold: int,
        eligible_voters: List[str],
    ) -> str:
        """Opens a k-of-n disclosure request on the current handle of a field.

        Raises:
            NotFound: If the record or field does not exist.
            Unauthorized: If the requester could not grant a read on the field itself.
            ValueError: If the threshold cannot be met by the eligible voters.
        """
        voters = list(dict.fromkeys(eligible_voters))
        if threshold < 1:
            raise ValueError("Threshold must be at least 1")
        if len(voters) < threshold:
            raise ValueError(
                f"Threshold {threshold} exceeds the {len(voters)} eligible voters"
            )
        value = self._store.get(record_id, field)
        if not self._acl.may_issue(requester, record_id, field, GrantKind.READ_PERSISTENT):
            raise Unauthorized(
                f"{requester} may not open a disclosure request on {record_id}.{field}"
            )
        request = DisclosureRequest(
            data_id=uuid.uuid4().hex,
            requester=requester,
            record_id=record_id,
            field=field,
            threshold=threshold,
            eligible_voters=voters,
        )
        with self._lock:
            self._requests[request.data_id] = request
            self._pinned_values[request.data_id] = value
            self._event_sink(
                "request_disclosure",
                {
                    "requester": requester,
                    "record_id": record_id,
                    "field": field,
                    "threshold": threshold,
                    "eligible_voters": voters,
                },
                {
                    "request_opened": request.model_dump(mode="json"),
                    "value": value.model_dump(mode="json"),
                },
            )
        self._logger.info(
            LogMessage(
                message="Threshold disclosure requested",
                structured_log_message_data={
                    "data_id": request.data_id,
                    "record_id": record_id,
                    "field_name": field,
                    "threshold": threshold,
                },
            )
        )
        return request.data_id

    def vote(self, principal: str, data_id: str, approve: bool = True) -> ThresholdState:
        """Records one vote, disclosing once distinct approvals reach the threshold.

        De-duplication and the threshold crossing happen under one lock, so two
        concurrent votes cannot both trigger the disclosure.

        Raises:
            NotFound: If the request does not exist.
            InvalidTransition: If the request is no longer open.
            Unauthorized: If the principal is not an eligible voter.
            DuplicateVote: If the principal already voted.
        """
        with self._lock:
            request = self._get_request(data_id)
            if request.state != ThresholdState.OPEN:
                raise InvalidTransition(f"Disclosure request {data_id} is {request.state}")
            if principal not in request.eligible_voters:
                raise Unauthorized(f"{principal} may not vote on {data_id}")
            if principal in request.votes:
                raise DuplicateVote(f"{principal} already voted on {data_id}")
            request.votes[principal] = approve
            self._event_sink(
                "vote",
                {"principal": principal, "data_id": data_id, "approve": approve},
                {"vote_recorded": {"data_id": data_id, "principal": principal, "approve": approve}},
            )
            self._logger.debug(
                LogMessage(
                    message="Vote recorded",
                    structured_log_message_data={
                        "data_id": data_id,
                        "principal": principal,
                        "approvals": request.approvals(),
                    },
                )
            )
            if request.approvals() >= request.threshold:
                self._set_state(request, ThresholdState.SATISFIED)
                self._finalize(request)
            return request.state

    def finalize(self, data_id: str) -> ThresholdState:
        """Runs the disclosure of a satisfied request whose decryption failed before."""
        with self._lock:
            request = self._get_request(data_id)
            if request.state == ThresholdState.OPEN:
                raise InvalidTransition(f"Disclosure request {data_id} is not satisfied")
            if request.state == ThresholdState.SATISFIED:
                self._finalize(request)
            return request.state

    def threshold_result(self, principal: str, data_id: str) -> Plaintext:
        """The disclosed plaintext, available to every principal that voted."""
        with self._lock:
            request = self._get_request(data_id)
            if request.state != ThresholdState.DISCLOSED:
                raise InvalidTransition(f"Disclosure request {data_id} is {request.state}")
            if principal not in request.votes:
                raise Unauthorized(f"{principal} did not vote on {data_id}")
            if data_id not in self._results:
                # only after a replay, the quorum already authorized the disclosure
                self._results[data_id] = self._decrypt(
                    self._pinned_values[data_id], request.requester, f"threshold:{data_id}"
                )
            return self._results[data_id]

    def status(self, data_id: str) -> DisclosureRequest:
        with self._lock:
            return self._get_request(data_id).model_copy(deep=True)

    def restore_request(self, request: DisclosureRequest, value: EncryptedValue) -> None:
        with self._lock:
            self._requests[request.data_id] = request.model_copy(deep=True)
            self._pinned_values[request.data_id] = value

    def restore_vote(self, data_id: str, principal: str, approve: bool) -> None:
        with self._lock:
            self._get_request(data_id).votes[principal] = approve

    def restore_state(self, data_id: str, state: ThresholdState) -> None:
        with self._lock:
            self._get_request(data_id).state = state

    def _finalize(self, request: DisclosureRequest) -> None:
        plaintext = self._decrypt(
            self._pinned_values[request.data_id],
            request.requester,
            f"threshold:{request.data_id}",
        )
        self._results[request.data_id] = plaintext
        self._set_state(request, ThresholdState.DISCLOSED)
        self._logger.info(
            LogMessage(
                message="Threshold disclosure completed",
                structured_log_message_data={
                    "data_id": request.data_id,
                    "record_id": request.record_id,
                    "field_name": request.field,
                    "voters": sorted(request.votes),
                },
            )
        )

    def _set_state(self, request: DisclosureRequest, state: ThresholdState) -> None:
        request.state = state
        self._event_sink(
            "threshold_transition",
            {"data_id": request.data_id},
            {"threshold_state": {"data_id": request.data_id, "state": state.value}},
        )

    def _get_request(self, data_id: str) -> DisclosureRequest:
        if data_id not in self._requests:
            raise NotFound(f"Disclosure request {data_id} not found")
        return self._requests[data_id]

    def _decrypt(self, value: EncryptedValue, principal: str, purpose: str) -> Plaintext:
        proof = self._capability.authorize(value, principal, purpose)
        try:
            raw = self._backend.decrypt(value, proof)
        except Exception as e:
            self._logger.error(
                LogMessage(
                    message="Backend failure during decryption",
                    structured_log_message_data={
                        "handle": value.handle,
                        "principal": principal,
                        "purpose": purpose,
                    },
                    error=e,
                )
            )
            raise BackendFailure(f"Backend failed to decrypt {value.handle}: {e}") from e
        return decode_plaintext(raw, value.data_type)
