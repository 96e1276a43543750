"""
Error types raised by the sync dispatcher and its collaborators.

Engine evaluation never raises; these cover remote access, policy
enforcement and per-user concurrency.
"""

from typing import Any, Optional


class AddonSyncError(Exception):
    """Base class for addon sync errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AccountNotLinked(AddonSyncError):
    """The user has no usable remote account (reported as status 'connect')."""

    def __init__(self, user_id: Any, message: str = "User not connected to account"):
        self.user_id = user_id
        super().__init__(message)


class TransportError(AddonSyncError):
    """A remote fetch or mutation failed and may be retried later."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PolicyViolation(AddonSyncError):
    """A mutation was blocked by the protection policy in safe mode."""

    def __init__(self, addon_key: str, mutation: str, reason: str):
        self.addon_key = addon_key
        self.mutation = mutation
        super().__init__(f"Cannot {mutation} {addon_key}: {reason}")


class Busy(AddonSyncError):
    """Another mutation or sync is already in flight for this user."""

    def __init__(self, user_id: Any):
        self.user_id = user_id
        super().__init__(f"An operation is already in progress for user {user_id}")
