"""
Custom Exceptions for ContextBank.

Provides specific exception types for the failure modes of profile switching,
bounded-context transitions and the chunked document store.

Retryable: ConcurrentSwitch, StorageUnavailable (see RETRYABLE_ERRORS).
Everything else is terminal and should be surfaced to the caller unchanged.
"""


class ContextBankError(Exception):
    """Base exception for all ContextBank errors."""
    pass


# =============================================================================
# Lookup Exceptions
# =============================================================================

class NotFound(ContextBankError):
    """Raised when a referenced entity does not exist."""
    pass


class ProfileNotFound(NotFound):
    """Raised when a profile does not exist for the given user."""

    def __init__(self, user_id: int, profile_id=None):
        self.user_id = user_id
        self.profile_id = profile_id
        super().__init__(f"Profile {profile_id} not found for user {user_id}")


class BoundedContextNotFound(NotFound):
    """Raised when a bounded context id is unknown."""

    def __init__(self, context_id: str):
        self.context_id = context_id
        super().__init__(f"Context {context_id} not found")


class TeachingSessionNotFound(NotFound):
    """Raised when a teaching session id is unknown for a context."""

    def __init__(self, context_id: str, session_id: str):
        self.context_id = context_id
        self.session_id = session_id
        super().__init__(f"Teaching session {session_id} not found in context {context_id}")


# =============================================================================
# Profile Exceptions
# =============================================================================

class DuplicateName(ContextBankError):
    """Raised when a profile name already exists for the user."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Profile "{name}" already exists')


class CannotDeleteActive(ContextBankError):
    """Raised when deleting the profile that is currently active."""

    def __init__(self, profile_id: int):
        self.profile_id = profile_id
        super().__init__(
            f"Cannot delete the active profile {profile_id}. Switch to another profile first."
        )


class ConcurrentSwitch(ContextBankError):
    """Raised when the active profile changed underneath a switch (retry)."""

    def __init__(self, user_id: int, expected_revision: int = None):
        self.user_id = user_id
        self.expected_revision = expected_revision
        super().__init__(f"Active profile for user {user_id} changed during switch")


# =============================================================================
# Lock Exceptions
# =============================================================================

class ContextLocked(ContextBankError):
    """Raised when mutating a context that is not currently unlockable."""

    def __init__(self, context_id, reason: str = None):
        self.context_id = context_id
        self.reason = reason
        msg = f"Context {context_id} is locked"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg + ". Unlock it first.")


class ProfileLocked(ContextLocked):
    """Raised when updating the knowledge state of a locked profile."""

    def __init__(self, profile_id: int):
        self.profile_id = profile_id
        super().__init__(profile_id, "profile knowledge updates are disabled")


# =============================================================================
# Storage Exceptions
# =============================================================================

class StorageUnavailable(ContextBankError):
    """Raised when the backing store times out or cannot be reached."""

    def __init__(self, operation: str, reason: str = None):
        self.operation = operation
        self.reason = reason
        msg = f"Storage unavailable during {operation}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class PayloadTooLarge(ContextBankError):
    """Raised when an indivisible token exceeds the hard document ceiling."""

    def __init__(self, size: int, max_size: int, doc_id: str = None):
        self.size = size
        self.max_size = max_size
        self.doc_id = doc_id
        msg = f"Chunk size ({size} bytes) exceeds document maximum ({max_size} bytes)"
        if doc_id:
            msg += f" for {doc_id}"
        super().__init__(msg)


# =============================================================================
# Configuration Exceptions
# =============================================================================

class ConfigurationError(ContextBankError):
    """Raised when there's a configuration problem."""

    def __init__(self, setting: str, reason: str = None):
        self.setting = setting
        self.reason = reason
        msg = f"Configuration error: {setting}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


RETRYABLE_ERRORS = (ConcurrentSwitch, StorageUnavailable)
