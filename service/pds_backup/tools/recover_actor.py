"""
Actor recovery CLI.

Re-initializes an actor store for an existing DID when the account row
exists in account.sqlite but the actor directory (store.sqlite + key) is
missing. The DID is preserved, so followers are kept.

Usage (on the PDS machine):
    pds-recover-actor did:plc:qakelcnspwr3a7oow7x666ad

Configuration comes from the same environment as the PDS (see config.py).

Exit codes:
    0 - recovered (possibly with warnings, e.g. PLC not updated)
    1 - precondition failed, configuration error, or a fatal step failed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..actors import AccountManager, ActorStore, PlcClient, Secp256k1Keypair, Sequencer
from ..config import ServiceConfig
from ..errors import AccountNotFoundError, ActorStoreExistsError
from ..recovery import RecoveryContext, RecoveryResult, RecoverySaga

logger = logging.getLogger(__name__)


def build_context(config: ServiceConfig) -> RecoveryContext:
    """Wire the recovery collaborators from service configuration."""
    rotation_key = None
    if config.identity.rotation_key_hex:
        rotation_key = Secp256k1Keypair.from_hex(config.identity.rotation_key_hex)
    else:
        logger.warning(
            "PDS_PLC_ROTATION_KEY_K256_PRIVATE_KEY_HEX is not set; "
            "the PLC signing key cannot be rotated"
        )

    busy_timeout_ms = config.storage.busy_timeout_ms
    return RecoveryContext(
        accounts=AccountManager(config.storage.account_db, busy_timeout_ms=busy_timeout_ms),
        actor_store=ActorStore(config.storage.actors_dir, busy_timeout_ms=busy_timeout_ms),
        identity=PlcClient(
            config.identity.plc_url,
            timeout_seconds=config.identity.timeout_seconds,
        ),
        rotation_key=rotation_key,
        sequencer=Sequencer(config.storage.sequencer_db, busy_timeout_ms=busy_timeout_ms),
        keypair_factory=Secp256k1Keypair.create,
    )


def print_result(result: RecoveryResult) -> None:
    if result.success:
        print(f"Recovery complete for {result.did}")
        print(f"  Handle: {result.handle or 'none'}")
        print(f"  New signing key: {result.signing_key_id}")
        print("  Repo: empty (posts/follows will need to be re-created)")
        print("  Followers: preserved (they follow the DID, not the repo)")
        print(f"  Duration: {result.duration_ms}ms")
    else:
        failure = result.failure
        print(f"Recovery failed for {result.did} at step {int(failure.step)} ({failure.step.name})")
        print(f"  Error: {failure.error}")
        print(f"  State: {failure.partial_state}")
        if result.commit is not None:
            print(f"  Commit: cid {result.commit.cid}, rev {result.commit.rev}")

    for warning in result.warnings:
        print(f"  WARNING (step {int(warning.step)}): {warning.error}")
        print(f"    {warning.partial_state}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for actor recovery."""
    parser = argparse.ArgumentParser(
        description="Re-initialize a missing actor store for an existing DID"
    )
    parser.add_argument("did", help="DID of the account to recover")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if not args.did.startswith("did:"):
        parser.error("did must start with 'did:'")

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    saga = RecoverySaga(build_context(config))
    try:
        result = asyncio.run(saga.recover(args.did))
    except (AccountNotFoundError, ActorStoreExistsError) as e:
        print(f"Recovery refused: {e.message}", file=sys.stderr)
        sys.exit(1)

    print_result(result)
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
