"""Encryption key rotation script.

Re-encrypts every stored secret under the current key version:

1. Generate a new key: openssl rand -hex 32
2. Add it as ENCRYPTION_KEY_V{N} and set CURRENT_KEY_VERSION=N
3. Run: qastudio-rotate-keys --vault-path integrations/secrets
4. Remove the old key only after this exits 0 and the secrets are verified

Exit code is 0 only if every record rotated.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from ..config import ConfigurationError, Settings, get_settings, validate_environment
from ..security.encryption import SecretCipher
from ..security.rotation import KeyRotationJob, RotationConfig, RotationReport
from ..security.stores import VaultSecretStore
from ..security.vault import VaultClient, VaultConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qastudio-rotate-keys",
        description="Re-encrypt stored secrets under the current key version.",
    )
    parser.add_argument("--vault-path", required=True, help="Vault KV path holding the secret records")
    parser.add_argument("--field", default="secret", help="Field holding the envelope (default: secret)")
    parser.add_argument("--concurrency", type=int, default=1, help="Records rotated in parallel")
    parser.add_argument("--skip-current", action="store_true", help="Skip records already on the current version")
    parser.add_argument("--dry-run", action="store_true", help="Re-encrypt without writing back")
    return parser


async def rotate(args: argparse.Namespace, settings: Settings, vault_client: Optional[VaultClient] = None) -> RotationReport:
    """Run the rotation against the Vault store named on the command line."""
    vault_client = vault_client or VaultClient(VaultConfig.from_settings(settings))
    registry = validate_environment(settings, vault_client=vault_client)

    cipher = SecretCipher(registry)
    store = VaultSecretStore(vault_client, args.vault_path, field=args.field)
    config = RotationConfig(
        max_concurrency=args.concurrency,
        skip_current=args.skip_current,
        dry_run=args.dry_run,
    )
    return await KeyRotationJob(cipher, store, config).run()


def main(argv: Optional[Sequence[str]] = None, settings: Optional[Settings] = None, vault_client: Optional[VaultClient] = None) -> int:
    """Entry point. Returns the process exit code."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)

    try:
        report = asyncio.run(rotate(args, settings or get_settings(), vault_client))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error during key rotation: {e}", exc_info=True)
        logger.error("Rotation aborted before any record was processed.")
        return 1

    for line in report.summary_lines():
        print(line)

    if not report.ok:
        return 1

    if report.total == 0:
        print("No records to rotate.")
    else:
        print("All records successfully rotated. Old keys can be removed after verification.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
