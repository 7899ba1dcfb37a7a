import base64
import binascii
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from vaultsync.errors import ValidationError


class SyncRequest(BaseModel):
    """Push body. Fields stay optional so missing ones reach the core as ValidationError.

    The logical clock travels under the active policy's ``clock_field``
    (``version``, ``lastModified``) and is kept as an extra field.
    """

    model_config = ConfigDict(extra="allow")

    encrypted_blob: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("encryptedBlob", "encrypted_blob"),
    )

    def clock(self, clock_field: str) -> Any:
        return (self.model_extra or {}).get(clock_field)


# ── Blob transport ─────────────────────────────────────────────────────────────

def decode_blob(data_b64: Optional[str]) -> Optional[bytes]:
    """base64 text from the wire → raw bytes. The bytes themselves are never inspected."""
    if data_b64 is None:
        return None
    try:
        return base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("encryptedBlob must be base64-encoded") from None


def encode_blob(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return base64.b64encode(data).decode("utf-8")


def format_clock(clock: Union[int, datetime, None]) -> Union[int, str, None]:
    if isinstance(clock, datetime):
        return clock.isoformat().replace("+00:00", "Z")
    return clock
