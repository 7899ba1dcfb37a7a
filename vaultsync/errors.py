"""Error taxonomy for the sync core.

Conflicts, pull-required and up-to-date results are *not* errors; they are
returned as outcomes by the coordinator.
"""


class VaultSyncError(Exception):
    """Base class for everything raised by vaultsync."""

    status_code = 500
    retryable = False


class ValidationError(VaultSyncError):
    """Push payload is missing fields or malformed. No transaction was opened."""

    status_code = 400


class AuthenticationError(VaultSyncError):
    status_code = 401


class ConfigError(VaultSyncError):
    """Invalid configuration detected at startup."""


class ServerError(VaultSyncError):
    """Unexpected failure; the vault is left as it was before the call."""

    status_code = 500


class StoreError(ServerError):
    """I/O or constraint failure in the store. The transaction was rolled back."""


class LockTimeout(StoreError):
    """The per-user lock could not be acquired within the configured wait."""

    status_code = 503
    retryable = True
