"""
Coherence Sync: Errors

Nothing here is fatal to a session. Store failures degrade to
stale-but-locally-correct state; identity errors are handed back to the
caller to act on.
"""

from typing import Optional


class CoherenceSyncError(Exception):
    pass


class TransientStoreError(CoherenceSyncError):
    """Network or backend failure talking to the remote progress store."""
    pass


class IdentityCollisionError(CoherenceSyncError):
    """The durable credential is already bound to another principal."""

    def __init__(self, kind: str, existing_uid: Optional[str] = None):
        self.kind = kind
        self.existing_uid = existing_uid
        super().__init__(
            f"Credential '{kind}' is already bound to another identity"
        )


class AuthenticationError(CoherenceSyncError):
    """Wrong password, unknown credential, or a bad/expired token."""
    pass


class RecoveryCodeInvalid(CoherenceSyncError):
    """Unknown or expired access code. Shown to the user as-is."""

    def __init__(self, code: str):
        self.code = code
        super().__init__("Signal frequency invalid or expired.")


class RecoveryError(CoherenceSyncError):
    pass


class PrivilegeError(CoherenceSyncError):
    pass
