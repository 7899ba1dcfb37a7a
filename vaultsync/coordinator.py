"""Push reconciliation and pull for a user's vault."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from vaultsync.errors import ServerError, StoreError, ValidationError
from vaultsync.policy import Clock, ConflictPolicy, Decision, VersionCounterPolicy
from vaultsync.schemas import encode_blob, format_clock
from vaultsync.store import VaultStore

logger = logging.getLogger(__name__)


# ── Outcomes ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Updated:
    new_clock: Clock
    body: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    status_code = 200

    def to_response(self) -> Dict[str, Any]:
        return self.body


@dataclass(frozen=True)
class Conflict:
    server_clock: Clock
    status_code = 409

    def to_response(self) -> Dict[str, Any]:
        return {"code": "CONFLICT", "serverVersion": format_clock(self.server_clock)}


@dataclass(frozen=True)
class PullRequired:
    blob: bytes
    server_clock: Clock
    status_code = 200

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "action": "pull_required",
            "encrypted_blob": encode_blob(self.blob),
            "lastModified": format_clock(self.server_clock),
        }


@dataclass(frozen=True)
class UpToDate:
    server_clock: Clock
    status_code = 200

    def to_response(self) -> Dict[str, Any]:
        return {"success": True, "action": "up_to_date", "lastModified": format_clock(self.server_clock)}


SyncOutcome = Union[Updated, Conflict, PullRequired, UpToDate]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """Runs one push per transaction under the user's exclusive lock."""

    def __init__(
        self,
        store: VaultStore,
        policy: ConflictPolicy,
        max_blob_bytes: int = 10 * 1024 * 1024,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.policy = policy
        self.max_blob_bytes = max_blob_bytes
        self._now = clock

    def validate(self, incoming_blob: Optional[bytes], incoming_clock: Any) -> Clock:
        if incoming_blob is None or incoming_clock is None:
            raise ValidationError("Missing fields")
        if not isinstance(incoming_blob, (bytes, bytearray, memoryview)):
            raise ValidationError("encrypted blob must be a byte sequence")
        if len(incoming_blob) > self.max_blob_bytes:
            raise ValidationError(
                f"encrypted blob exceeds the {self.max_blob_bytes} byte limit"
            )
        return self.policy.coerce_clock(incoming_clock)

    def push(
        self,
        user_id: str,
        device_id: str,
        incoming_blob: Optional[bytes],
        incoming_clock: Any,
    ) -> SyncOutcome:
        incoming = self.validate(incoming_blob, incoming_clock)
        blob = bytes(incoming_blob)

        try:
            with self.store.transaction(user_id) as session:
                current = self.store.read_for_update(session, user_id)
                verdict = self.policy.evaluate(incoming, current)

                if verdict.decision is Decision.ACCEPT:
                    record = self.policy.next_record(
                        user_id, device_id, blob, verdict.clock, current, self._now()
                    )
                    self.store.upsert(session, record)
                    outcome = Updated(verdict.clock, self.policy.accepted_body(verdict.clock))
                else:
                    session.rollback()
                    outcome = self._rejection(verdict)
        except StoreError as exc:
            logger.warning("Push for user %s from device %s failed: %s", user_id, device_id, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected failure pushing vault for user %s", user_id)
            raise ServerError("Server error") from exc

        logger.info(
            "Push user=%s device=%s policy=%s outcome=%s",
            user_id, device_id, self.policy.name, type(outcome).__name__,
        )
        return outcome

    @staticmethod
    def _rejection(verdict) -> SyncOutcome:
        if verdict.decision is Decision.REJECT:
            return Conflict(verdict.clock)
        if verdict.decision is Decision.PULL_REQUIRED:
            return PullRequired(verdict.blob, verdict.clock)
        return UpToDate(verdict.clock)


# ── Pull ───────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VaultSnapshot:
    blob: bytes
    clock: Clock


class PullHandler:
    """Unlocked, side-effect free fetch of the current vault."""

    def __init__(self, store: VaultStore, policy: Optional[ConflictPolicy] = None):
        self.store = store
        self.policy = policy or VersionCounterPolicy()

    def pull(self, user_id: str) -> Optional[VaultSnapshot]:
        record = self.store.read(user_id)
        if record is None:
            return None
        return VaultSnapshot(record.encrypted_blob, self.policy.current_clock(record))

    def to_response(self, snapshot: Optional[VaultSnapshot]) -> Dict[str, Any]:
        key = self.policy.clock_field
        if snapshot is None:
            return {"encrypted_blob": None, key: None}
        return {"encrypted_blob": encode_blob(snapshot.blob), key: format_clock(snapshot.clock)}
