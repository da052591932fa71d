"""Exceptions shared by the cipher and the envelope codec."""


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""

    pass


class DecryptionError(EncryptionError):
    """Raised when an envelope cannot be decrypted.

    Covers tampering, a wrong key and corrupt data. The message never
    includes plaintext or low-level cipher detail.
    """

    pass
