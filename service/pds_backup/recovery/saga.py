"""
Actor recovery saga.

Use when the account record exists but the actor directory (store.sqlite
and key) is gone. The DID is preserved, so followers are kept; the repo
starts empty.

Steps:
    1. Generate a new signing keypair
    2. Create the actor directory, store.sqlite and key file
    3. Create an empty repo with its initial commit
    4. Point the account's repo root at that commit
    5. Rotate the signing key in the identity directory   (non-fatal)
    6. Sequence an identity event, then a commit event     (fatal only if
       the sequencer itself is unavailable)
    7. Clear any reserved keypair for the new key         (ignored)

Steps 1-4 are fatal. Nothing is rolled back: a half-created store is safe
to inspect and clean up by hand, while deleting it automatically could
destroy evidence of the original failure. The result names the failed
step and what was left behind.

How to change safely:
    - Never reorder steps 3 and 4; the account must not point at a commit
      that does not exist
    - Keep the identity event before the commit event
    - Do not make step 5 fatal; the local store is usable without it
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from ..errors import AccountNotFoundError, ActorStoreExistsError, SequencingError
from .base import RecoveryContext

logger = logging.getLogger(__name__)


class RecoveryStep(IntEnum):
    """Recovery steps, in execution order."""

    GENERATE_KEYPAIR = 1
    CREATE_STORE = 2
    CREATE_REPO = 3
    UPDATE_REPO_ROOT = 4
    UPDATE_IDENTITY = 5
    SEQUENCE_EVENTS = 6
    CLEAR_RESERVED_KEYPAIR = 7


@dataclass
class StepFailure:
    """A failed step.

    Attributes:
        step: Which step failed
        error: Underlying cause
        fatal: Whether the saga stopped here
        partial_state: What was left behind, for the operator
    """

    step: RecoveryStep
    error: str
    fatal: bool
    partial_state: str = ""


@dataclass
class RecoveryResult:
    """Result of a recovery run.

    Attributes:
        did: Recovered identity
        handle: Account handle
        signing_key_id: New signing key (did:key) once generated
        commit: Initial commit once created
        completed_steps: Steps that succeeded, in order
        failure: Fatal failure that stopped the saga, if any
        warnings: Non-fatal step failures
        duration_ms: Total duration
    """

    did: str
    handle: str | None = None
    signing_key_id: str | None = None
    commit: Any = None
    completed_steps: list[RecoveryStep] = field(default_factory=list)
    failure: StepFailure | None = None
    warnings: list[StepFailure] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def degraded(self) -> bool:
        """Succeeded, but with at least one flagged sub-failure."""
        return self.success and bool(self.warnings)


_PARTIAL_STATE = {
    RecoveryStep.GENERATE_KEYPAIR: "No state changed.",
    RecoveryStep.CREATE_STORE: (
        "Nothing was published. If the actor directory was partially created, "
        "remove it and re-run recovery."
    ),
    RecoveryStep.CREATE_REPO: (
        "The actor store exists but has no repo and is unusable. "
        "Remove the actor directory and re-run recovery."
    ),
    RecoveryStep.UPDATE_REPO_ROOT: (
        "The actor store has a new commit but the account still points at the old "
        "repo root. Retry the repo root update with the commit in this result."
    ),
    RecoveryStep.SEQUENCE_EVENTS: (
        "The store and account are consistent but subscribers were not notified. "
        "Re-sequence the identity and commit events once the sequencer is back."
    ),
}


class RecoverySaga:
    """Rebuilds an empty actor store under an existing DID.

    Example:
        >>> saga = RecoverySaga(context)
        >>> result = await saga.recover("did:plc:abc")
        >>> if not result.success:
        ...     print(result.failure.step, result.failure.partial_state)
    """

    def __init__(self, context: RecoveryContext) -> None:
        self.context = context

    async def check_preconditions(self, did: str) -> Any:
        """Verify the account exists and its store does not.

        Returns:
            The account record

        Raises:
            AccountNotFoundError: If there is no account for the DID
            ActorStoreExistsError: If the actor store is still present
        """
        account = await self.context.accounts.get_account(did)
        if account is None:
            raise AccountNotFoundError(did)
        logger.info(f"Found account: {did} (handle: {account.handle})")

        if await self.context.actor_store.exists(did):
            raise ActorStoreExistsError(did)
        logger.info("Confirmed: actor store is missing. Proceeding with recovery.")

        return account

    async def recover(self, did: str) -> RecoveryResult:
        """Run the saga.

        Precondition violations raise before any mutation. Step failures are
        reported in the result, never raised.

        Raises:
            AccountNotFoundError: If there is no account for the DID
            ActorStoreExistsError: If the actor store is still present
        """
        start_time = time.time()
        account = await self.check_preconditions(did)
        result = RecoveryResult(did=did, handle=account.handle)

        try:
            await self._run_steps(did, account, result)
        finally:
            result.duration_ms = int((time.time() - start_time) * 1000)

        if result.success:
            logger.info(
                f"Recovery complete for {did}",
                extra={
                    "did": did,
                    "handle": result.handle,
                    "signing_key": result.signing_key_id,
                    "warnings": len(result.warnings),
                },
            )
        return result

    def _fatal(self, result: RecoveryResult, step: RecoveryStep, error: Exception) -> None:
        failure = StepFailure(
            step=step,
            error=f"{type(error).__name__}: {error}",
            fatal=True,
            partial_state=_PARTIAL_STATE.get(step, ""),
        )
        result.failure = failure
        logger.error(
            f"Recovery of {result.did} failed at step {int(step)} ({step.name}): {error}",
            exc_info=error,
            extra={"did": result.did, "step": int(step), "partial_state": failure.partial_state},
        )

    def _warn(
        self,
        result: RecoveryResult,
        step: RecoveryStep,
        error: Exception,
        partial_state: str,
    ) -> None:
        result.warnings.append(
            StepFailure(
                step=step,
                error=f"{type(error).__name__}: {error}",
                fatal=False,
                partial_state=partial_state,
            )
        )

    async def _run_steps(self, did: str, account: Any, result: RecoveryResult) -> None:
        ctx = self.context

        # Step 1
        try:
            keypair = ctx.keypair_factory()
            result.signing_key_id = keypair.did()
        except Exception as e:
            self._fatal(result, RecoveryStep.GENERATE_KEYPAIR, e)
            return
        result.completed_steps.append(RecoveryStep.GENERATE_KEYPAIR)
        logger.info(f"New signing key: {result.signing_key_id}")

        # Step 2
        try:
            await ctx.actor_store.create(did, keypair)
        except Exception as e:
            self._fatal(result, RecoveryStep.CREATE_STORE, e)
            return
        result.completed_steps.append(RecoveryStep.CREATE_STORE)

        # Step 3
        try:
            commit = await ctx.actor_store.transact(did, lambda txn: txn.repo.create_repo())
            result.commit = commit
        except Exception as e:
            self._fatal(result, RecoveryStep.CREATE_REPO, e)
            return
        result.completed_steps.append(RecoveryStep.CREATE_REPO)
        logger.info(f"Repo created: cid {commit.cid}, rev {commit.rev}")

        # Step 4
        try:
            await ctx.accounts.update_repo_root(did, commit.cid, commit.rev)
        except Exception as e:
            self._fatal(result, RecoveryStep.UPDATE_REPO_ROOT, e)
            return
        result.completed_steps.append(RecoveryStep.UPDATE_REPO_ROOT)
        logger.info("Repo root updated in account manager")

        # Step 5
        try:
            if ctx.rotation_key is None:
                raise ValueError("No rotation key configured")
            await ctx.identity.update_signing_key(did, ctx.rotation_key, result.signing_key_id)
            result.completed_steps.append(RecoveryStep.UPDATE_IDENTITY)
        except Exception as e:
            self._warn(
                result,
                RecoveryStep.UPDATE_IDENTITY,
                e,
                "The identity directory still lists the old signing key. "
                "Run the key rotation procedure manually.",
            )
            logger.warning(
                f"WARNING: identity directory update failed for {did}: {e}. "
                "The actor store was created but the directory still has the old key; "
                "run the key rotation procedure manually.",
                extra={"did": did, "signing_key": result.signing_key_id},
            )

        # Step 6
        sequenced = 0
        for name, send in (
            ("identity", lambda: ctx.sequencer.sequence_identity_event(did, account.handle)),
            ("commit", lambda: ctx.sequencer.sequence_commit(did, commit)),
        ):
            try:
                await send()
                sequenced += 1
            except SequencingError as e:
                self._fatal(result, RecoveryStep.SEQUENCE_EVENTS, e)
                return
            except Exception as e:
                self._warn(
                    result,
                    RecoveryStep.SEQUENCE_EVENTS,
                    e,
                    f"The {name} event was not sequenced; re-sequence it manually.",
                )
                logger.warning(f"Failed to sequence {name} event for {did}: {e}")
        if sequenced == 2:
            result.completed_steps.append(RecoveryStep.SEQUENCE_EVENTS)

        # Step 7
        try:
            await ctx.actor_store.clear_reserved_keypair(result.signing_key_id, did)
            result.completed_steps.append(RecoveryStep.CLEAR_RESERVED_KEYPAIR)
        except Exception as e:
            logger.debug(f"Ignoring reserved keypair cleanup failure for {did}: {e}")
