"""Conflict policies deciding whether an incoming push may replace the vault.

Both policies compare an incoming logical clock with the stored one and only
differ in what the clock is and how ties are treated: a version counter never
accepts an equal version, whereas equal timestamps mean both sides already hold
the same vault.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from vaultsync.errors import ConfigError, ValidationError
from vaultsync.models import VaultRecord, as_utc
from vaultsync.schemas import format_clock

Clock = Union[int, datetime]

# largest value the BIGINT version column holds
MAX_VERSION = 2**63 - 1


class Decision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    PULL_REQUIRED = "pull_required"
    UP_TO_DATE = "up_to_date"


@dataclass(frozen=True)
class Verdict:
    """Outcome of a policy evaluation.

    ``clock`` is the new clock for ACCEPT and the server's clock otherwise.
    ``blob`` is only set for PULL_REQUIRED.
    """

    decision: Decision
    clock: Clock
    blob: Optional[bytes] = None


class ConflictPolicy(ABC):
    name: str = ""
    # key carrying the logical clock in push requests and pull responses
    clock_field: str = ""

    @abstractmethod
    def coerce_clock(self, raw: Any) -> Clock:
        """Validate a client-supplied clock; raise ValidationError if malformed."""

    @abstractmethod
    def current_clock(self, record: VaultRecord) -> Clock:
        """The logical clock stored in ``record`` under this policy."""

    @abstractmethod
    def evaluate(self, incoming: Clock, current: Optional[VaultRecord]) -> Verdict:
        """Pure decision: no I/O, no mutation."""

    @abstractmethod
    def next_record(
        self,
        user_id: str,
        device_id: str,
        blob: bytes,
        new_clock: Clock,
        current: Optional[VaultRecord],
        now: datetime,
    ) -> VaultRecord:
        """Record to store after an ACCEPT."""

    @abstractmethod
    def accepted_body(self, new_clock: Clock) -> Dict[str, Any]:
        """Wire body for an accepted push."""


class VersionCounterPolicy(ConflictPolicy):
    """Accept iff the client's integer version is strictly above the stored one."""

    name = "version"
    clock_field = "version"

    def coerce_clock(self, raw: Any) -> int:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValidationError("version must be an integer")
        if raw < 1:
            raise ValidationError("version must be a positive integer")
        if raw > MAX_VERSION:
            raise ValidationError(f"version must not exceed {MAX_VERSION}")
        return raw

    def current_clock(self, record: VaultRecord) -> int:
        return record.version

    def evaluate(self, incoming: int, current: Optional[VaultRecord]) -> Verdict:
        if current is None or incoming > current.version:
            return Verdict(Decision.ACCEPT, incoming)
        return Verdict(Decision.REJECT, current.version)

    def next_record(self, user_id, device_id, blob, new_clock, current, now):
        return VaultRecord(
            user_id=user_id,
            encrypted_blob=blob,
            version=new_clock,
            last_writer_device_id=device_id,
            updated_at=as_utc(now),
        )

    def accepted_body(self, new_clock: int) -> Dict[str, Any]:
        return {"success": True, "newVersion": new_clock}


class TimestampPolicy(ConflictPolicy):
    """Last-modified instants: newer client wins, newer server asks for a pull."""

    name = "timestamp"
    clock_field = "lastModified"

    def coerce_clock(self, raw: Any) -> datetime:
        if isinstance(raw, str):
            try:
                raw = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError("lastModified must be an ISO-8601 timestamp") from None
        if not isinstance(raw, datetime):
            raise ValidationError("lastModified must be an ISO-8601 timestamp")
        return as_utc(raw)

    def current_clock(self, record: VaultRecord) -> datetime:
        return record.updated_at

    def evaluate(self, incoming: datetime, current: Optional[VaultRecord]) -> Verdict:
        if current is None or incoming > current.updated_at:
            return Verdict(Decision.ACCEPT, incoming)
        if incoming < current.updated_at:
            return Verdict(Decision.PULL_REQUIRED, current.updated_at, current.encrypted_blob)
        return Verdict(Decision.UP_TO_DATE, current.updated_at)

    def next_record(self, user_id, device_id, blob, new_clock, current, now):
        # version keeps counting accepted pushes for auditing
        return VaultRecord(
            user_id=user_id,
            encrypted_blob=blob,
            version=(current.version if current is not None else 0) + 1,
            last_writer_device_id=device_id,
            updated_at=new_clock,
        )

    def accepted_body(self, new_clock: datetime) -> Dict[str, Any]:
        return {"success": True, "action": "updated", "lastModified": format_clock(new_clock)}


POLICIES: Dict[str, Type[ConflictPolicy]] = {
    VersionCounterPolicy.name: VersionCounterPolicy,
    TimestampPolicy.name: TimestampPolicy,
}

DEFAULT_POLICY = VersionCounterPolicy.name


def get_policy(name: str = DEFAULT_POLICY) -> ConflictPolicy:
    try:
        return POLICIES[name.strip().lower()]()
    except KeyError:
        raise ConfigError(
            f"Unknown sync policy {name!r}; expected one of {sorted(POLICIES)}"
        ) from None
