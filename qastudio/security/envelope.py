"""Text envelopes for encrypted secrets.

Three formats are stored side by side:

- legacy (version 1, AES-256-CBC): ``{iv-hex}:{ciphertext-hex}``
- unversioned GCM (version 0, written before envelopes carried a version):
  ``{iv-hex}:{authTag-hex}:{ciphertext-hex}``
- versioned (AES-256-GCM): ``v{N}:{iv-hex}:{ciphertext-hex}:{authTag-hex}``

Parsing dispatches on the field count and version tag and returns one of
the envelope types below.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union

from .errors import DecryptionError

UNVERSIONED_GCM_VERSION = 0
LEGACY_CBC_VERSION = 1

CBC_IV_SIZE = 16
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16

_HEX = re.compile(r"^(?:[0-9a-fA-F]{2})*$")
_VERSION_TAG = re.compile(r"^v([1-9][0-9]*)$")


class InvalidEnvelopeFormatError(DecryptionError):
    """Raised when a stored value is not a well-formed envelope."""

    pass


@dataclass(frozen=True)
class LegacyEnvelope:
    """Unversioned CBC envelope, always key version 1."""

    iv: bytes
    ciphertext: bytes

    @property
    def version(self) -> int:
        return LEGACY_CBC_VERSION


@dataclass(frozen=True)
class UnversionedGcmEnvelope:
    """GCM envelope from before version tags, read with key version 0.

    Field order on the wire is iv, auth tag, ciphertext.
    """

    iv: bytes
    auth_tag: bytes
    ciphertext: bytes

    @property
    def version(self) -> int:
        return UNVERSIONED_GCM_VERSION


@dataclass(frozen=True)
class VersionedEnvelope:
    """Authenticated GCM envelope tagged with its key version."""

    version: int
    iv: bytes
    ciphertext: bytes
    auth_tag: bytes


Envelope = Union[LegacyEnvelope, UnversionedGcmEnvelope, VersionedEnvelope]


def serialize(version: int, iv: bytes, ciphertext: bytes, auth_tag: Optional[bytes] = None) -> str:
    """Serialize envelope fields to text.

    Raises:
        InvalidEnvelopeFormatError: If the fields do not fit the version's format
    """
    if auth_tag is None:
        if version != LEGACY_CBC_VERSION:
            raise InvalidEnvelopeFormatError(f"Version {version} envelopes require an auth tag")
        return serialize_envelope(LegacyEnvelope(iv=iv, ciphertext=ciphertext))
    if version == UNVERSIONED_GCM_VERSION:
        return serialize_envelope(UnversionedGcmEnvelope(iv=iv, auth_tag=auth_tag, ciphertext=ciphertext))
    return serialize_envelope(
        VersionedEnvelope(version=version, iv=iv, ciphertext=ciphertext, auth_tag=auth_tag)
    )


def serialize_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to lowercase hex text."""
    _check_sizes(envelope)
    if isinstance(envelope, LegacyEnvelope):
        return f"{envelope.iv.hex()}:{envelope.ciphertext.hex()}"
    if isinstance(envelope, UnversionedGcmEnvelope):
        return f"{envelope.iv.hex()}:{envelope.auth_tag.hex()}:{envelope.ciphertext.hex()}"
    return (
        f"v{envelope.version}:{envelope.iv.hex()}:"
        f"{envelope.ciphertext.hex()}:{envelope.auth_tag.hex()}"
    )


def parse(text: str) -> Envelope:
    """Parse envelope text.

    Raises:
        InvalidEnvelopeFormatError: On a wrong field count, bad version tag or bad hex
    """
    if not isinstance(text, str):
        raise InvalidEnvelopeFormatError("Envelope must be a string")

    fields = text.split(":")

    if len(fields) == 2:
        iv_hex, ciphertext_hex = fields
        envelope: Envelope = LegacyEnvelope(
            iv=_decode_hex(iv_hex, "iv"),
            ciphertext=_decode_hex(ciphertext_hex, "ciphertext"),
        )
    elif len(fields) == 3:
        iv_hex, auth_tag_hex, ciphertext_hex = fields
        envelope = UnversionedGcmEnvelope(
            iv=_decode_hex(iv_hex, "iv"),
            auth_tag=_decode_hex(auth_tag_hex, "auth tag"),
            ciphertext=_decode_hex(ciphertext_hex, "ciphertext"),
        )
    elif len(fields) == 4:
        tag, iv_hex, ciphertext_hex, auth_tag_hex = fields
        match = _VERSION_TAG.match(tag)
        if not match:
            raise InvalidEnvelopeFormatError("Missing or malformed version tag")
        version = int(match.group(1))
        if version == LEGACY_CBC_VERSION:
            raise InvalidEnvelopeFormatError("Version 1 envelopes are unversioned")
        envelope = VersionedEnvelope(
            version=version,
            iv=_decode_hex(iv_hex, "iv"),
            ciphertext=_decode_hex(ciphertext_hex, "ciphertext"),
            auth_tag=_decode_hex(auth_tag_hex, "auth tag"),
        )
    else:
        raise InvalidEnvelopeFormatError(f"Unexpected field count: {len(fields)}")

    _check_sizes(envelope)
    return envelope


def is_envelope(text: str) -> bool:
    """Check whether a value looks like an encrypted envelope."""
    try:
        parse(text)
    except InvalidEnvelopeFormatError:
        return False
    return True


def _decode_hex(value: str, label: str) -> bytes:
    if not _HEX.match(value):
        raise InvalidEnvelopeFormatError(f"Invalid hex in {label} field")
    return bytes.fromhex(value)


def _check_sizes(envelope: Envelope) -> None:
    if isinstance(envelope, LegacyEnvelope):
        if len(envelope.iv) != CBC_IV_SIZE:
            raise InvalidEnvelopeFormatError(f"Legacy IV must be {CBC_IV_SIZE} bytes")
        if not envelope.ciphertext or len(envelope.ciphertext) % 16:
            raise InvalidEnvelopeFormatError("Legacy ciphertext must be whole AES blocks")
        return

    if isinstance(envelope, VersionedEnvelope) and envelope.version <= LEGACY_CBC_VERSION:
        raise InvalidEnvelopeFormatError(f"Invalid envelope version: {envelope.version}")
    if len(envelope.iv) != GCM_NONCE_SIZE:
        raise InvalidEnvelopeFormatError(f"IV must be {GCM_NONCE_SIZE} bytes")
    if len(envelope.auth_tag) != GCM_TAG_SIZE:
        raise InvalidEnvelopeFormatError(f"Auth tag must be {GCM_TAG_SIZE} bytes")
