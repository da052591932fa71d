"""Encryption key rotation for stored secrets.

Provides:
- Re-encryption of every stored secret under the current key version
- Per-record failure tracking (one failure never stops the batch)
- A report that fails loudly if any record is still on an old key
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from .encryption import SecretCipher, redact

logger = logging.getLogger(__name__)


class RotationStatus(str, Enum):
    """Outcome for one record."""

    ROTATED = "ROTATED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SecretRecord:
    """An encrypted secret and the record that owns it."""

    id: str
    name: str
    value: str


class SecretRecordStore(Protocol):
    """Source and sink of encrypted secret records."""

    async def list_records(self) -> list[SecretRecord]:
        ...

    async def update_record(self, record_id: str, value: str) -> None:
        ...


@dataclass
class RotationConfig:
    """Configuration for a rotation run."""

    max_concurrency: int = 1
    skip_current: bool = False  # Leave records already on the current version
    dry_run: bool = False  # Re-encrypt but don't persist

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")


@dataclass(frozen=True)
class RotationFailure:
    """A record that could not be rotated."""

    record_id: str
    name: str
    error: str


@dataclass
class RotationReport:
    """Summary of a rotation run."""

    total: int = 0
    rotated: int = 0
    skipped: int = 0
    failures: list[RotationFailure] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        """True only if no record failed."""
        return not self.failures

    def summary_lines(self) -> list[str]:
        """Human-readable summary for operators."""
        lines = [
            "Rotation Summary:",
            f"  Total: {self.total}",
            f"  Rotated: {self.rotated}",
            f"  Skipped: {self.skipped}",
            f"  Failed: {self.failure_count}",
        ]
        if self.failures:
            lines.append("Failed records:")
            lines.extend(f"  - {f.name} ({f.record_id}): {f.error}" for f in self.failures)
            lines.append("Some records failed to rotate. Do NOT remove old keys yet!")
        return lines

    def raise_for_failures(self) -> None:
        """Raise if any record failed.

        Raises:
            KeyRotationError: If the rotation was partial
        """
        if self.failures:
            raise KeyRotationError(self)


class KeyRotationError(Exception):
    """Raised when some records are still encrypted under an old key."""

    def __init__(self, report: RotationReport):
        self.report = report
        super().__init__(
            f"{report.failure_count} of {report.total} records failed to rotate; "
            "old key material is still required"
        )


class KeyRotationJob:
    """Re-encrypts every stored secret under the current key version.

    Usage:
        job = KeyRotationJob(cipher, store)
        report = await job.run()
        report.raise_for_failures()
    """

    def __init__(
        self,
        cipher: SecretCipher,
        store: SecretRecordStore,
        config: Optional[RotationConfig] = None,
    ):
        """Initialize rotation job.

        Args:
            cipher: Cipher holding the old and current key versions
            store: Record store to read from and write to
            config: Rotation configuration
        """
        self.cipher = cipher
        self.store = store
        self.config = config or RotationConfig()

    async def run(self) -> RotationReport:
        """Rotate every record.

        Returns:
            Report of the run

        Raises:
            Exception: Whatever the store raises if records can't be listed
        """
        records = await self.store.list_records()
        report = RotationReport(total=len(records))
        current = self.cipher.registry.current_version()

        logger.info(
            f"Starting key rotation to v{current}: {len(records)} records"
            f"{' (dry run)' if self.config.dry_run else ''}"
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def rotate_with_limit(record: SecretRecord) -> None:
            async with semaphore:
                status, error = await self._rotate_record(record)
            if status is RotationStatus.ROTATED:
                report.rotated += 1
            elif status is RotationStatus.SKIPPED:
                report.skipped += 1
            else:
                report.failures.append(
                    RotationFailure(record_id=record.id, name=record.name, error=error or "")
                )

        await asyncio.gather(*(rotate_with_limit(record) for record in records))

        if report.ok:
            logger.info(f"Key rotation completed: {report.rotated} rotated, {report.skipped} skipped")
        else:
            logger.error(
                f"Key rotation incomplete: {report.failure_count} of {report.total} records failed"
            )
        return report

    async def _rotate_record(self, record: SecretRecord) -> tuple[RotationStatus, Optional[str]]:
        try:
            if self.config.skip_current and not self.cipher.needs_rotation(record.value):
                logger.debug(f"Skipping {record.name} ({record.id}): already current")
                return RotationStatus.SKIPPED, None

            new_value = self.cipher.reencrypt(record.value)

            if not self.config.dry_run:
                await self.store.update_record(record.id, new_value)

            logger.info(f"Re-encrypted {record.name} ({record.id}) -> {redact(new_value, 3)}")
            return RotationStatus.ROTATED, None

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"Failed to rotate {record.name} ({record.id}): {error}")
            return RotationStatus.FAILED, error
