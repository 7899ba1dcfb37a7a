"""VaultSync: multi-device synchronization of a single encrypted vault blob."""

__version__ = "0.5.0"
