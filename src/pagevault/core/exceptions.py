"""
Exceptions for pagevault
This is placed such that there is a general error catcher
"""


class PageVaultError(Exception):
    # general container for errors
    pass


class ConfigurationError(PageVaultError):
    # raised for KDF parameters below the floor, bad chunk sizes, bad settings
    pass


class AuthenticationFailed(PageVaultError):
    # raised when no key slot accepts the supplied secret
    pass


class ChunkIntegrityError(PageVaultError):
    # raised on an authentication tag mismatch for a payload chunk

    def __init__(self, index: int, message: str = "chunk failed authentication"):
        super().__init__(f"{message} (chunk {index})")
        self.index = index


class InvariantViolation(PageVaultError):
    # raised when an operation would break an envelope invariant
    pass


class SlotNotFoundError(InvariantViolation):
    # raised when a slot id is not present in the envelope
    pass


class LastSlotError(InvariantViolation):
    # raised when revoking would leave the envelope without any key slot
    pass


class ResourceExhausted(PageVaultError):
    # raised when the random source or an allocation fails during encryption
    pass


class ArchiveNotFoundError(PageVaultError):
    # raised when an archive directory or manifest DNE
    pass


class ArchiveCorruptError(PageVaultError):
    # raised when a manifest or chunk file is malformed
    pass


class OperationCancelled(PageVaultError):
    # raised when a cancellable operation observes its cancel flag
    pass


class SessionLockedError(PageVaultError):
    # raised when a locked or expired session is used
    pass
