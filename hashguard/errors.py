class HashGuardError(Exception):
    """
    Base exception for all HashGuard failures.
    """

    pass


class EvidenceNotFound(HashGuardError):
    """
    Raised when an operation references an unknown evidence id or digest.
    """

    pass


class ContentUnavailable(HashGuardError):
    """
    Raised when the bytes behind a content locator cannot be read.
    """

    pass


class KeyUnavailable(HashGuardError):
    """
    Raised when signing or verification key material is not loaded.
    """

    pass


class AnchorServiceUnavailable(HashGuardError):
    """
    Raised when the external timestamp anchoring integration cannot be used.
    """

    pass


class MalformedInput(HashGuardError):
    """
    Raised when caller-supplied input (e.g. a digest) is not well formed.
    """

    pass


class DuplicateEvidence(HashGuardError):
    """
    Raised when intake finds content whose digest is already stored.
    """

    pass

