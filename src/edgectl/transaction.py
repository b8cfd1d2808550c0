"""Validate, commit and roll back a single configuration unit change.

The protocol for every create, update, raw edit and delete:

1. Snapshot the unit (body and activation link) before touching it.
2. Apply the change to the configuration store.
3. Commit attempt: ``nginx -t`` followed by a service reload.
4. On any failure in 2 or 3, restore the snapshot verbatim, push the reverted
   state live with one best-effort reload and report ``rolled_back``. If the
   snapshot cannot be restored the outcome is ``fatal``: the store and the
   live service may disagree and an operator has to step in.

Callers hold the global mutation lock around :meth:`TransactionManager.execute`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .providers.nginx import NginxError, NginxProvider, ReloadFailure
from .store import ConfigurationStore, StoreError, UnitSnapshot

if TYPE_CHECKING:
    from .logging import OperationScope

logger = logging.getLogger(__name__)


class TransactionOutcome(str, Enum):
    """Terminal state of a mutation transaction."""

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"


class MutationAction(str, Enum):
    """Kind of change applied to a unit."""

    CREATE = "create"
    UPDATE = "update"
    RAW_EDIT = "raw-edit"
    DELETE = "delete"


class RollbackFailure(RuntimeError):
    """The compensating action of a failed mutation failed as well."""

    def __init__(self, message: str, *, original: str, rollback_error: str) -> None:
        """Keep both the original failure and the rollback error."""
        super().__init__(message)
        self.original = original
        self.rollback_error = rollback_error


@dataclass(slots=True)
class MutationTransaction:
    """Ephemeral record of one unit change; lives for a single request."""

    unit_key: str
    action: MutationAction
    previous: UnitSnapshot
    proposed_body: str | None
    outcome: TransactionOutcome | None = None

    @property
    def previous_body(self) -> str | None:
        """Body before the change (``None`` for creates)."""
        return self.previous.body


@dataclass(slots=True)
class MutationResult:
    """What happened to a mutation, as reported to callers."""

    outcome: TransactionOutcome
    unit_key: str
    action: MutationAction
    detail: str = ""
    rollback_attempted: bool = False
    rollback_error: str | None = None
    reload_after_rollback: bool | None = None
    steps: list[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        """Return ``True`` when the change is live."""
        return self.outcome is TransactionOutcome.COMMITTED

    @property
    def rolled_back(self) -> bool:
        """Return ``True`` when the store was reverted cleanly."""
        return self.outcome is TransactionOutcome.ROLLED_BACK

    @property
    def fatal(self) -> bool:
        """Return ``True`` when the rollback itself failed."""
        return self.outcome is TransactionOutcome.FATAL

    def raise_for_fatal(self) -> None:
        """Raise :class:`RollbackFailure` when the outcome is fatal."""
        if self.fatal:
            raise RollbackFailure(
                f"Rollback of {self.action.value} '{self.unit_key}' failed: "
                f"{self.rollback_error}; original failure: {self.detail}",
                original=self.detail,
                rollback_error=self.rollback_error or "",
            )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "outcome": self.outcome.value,
            "unit": self.unit_key,
            "action": self.action.value,
            "committed": self.committed,
            "rollback_attempted": self.rollback_attempted,
            "rolled_back": self.rolled_back,
            "rollback_error": self.rollback_error,
            "reload_after_rollback": self.reload_after_rollback,
            "detail": self.detail,
        }


@dataclass(slots=True)
class TransactionManager:
    """Run the validate→commit→rollback protocol against a store."""

    nginx: NginxProvider

    def execute(
        self,
        store: ConfigurationStore,
        key: str,
        action: MutationAction,
        proposed_body: str | None = None,
        *,
        op: OperationScope | None = None,
    ) -> MutationResult:
        """Apply *action* to *key* in *store* and commit or roll it back."""
        if action is not MutationAction.DELETE and proposed_body is None:
            raise ValueError(f"{action.value} requires a proposed body.")

        txn = MutationTransaction(
            unit_key=key,
            action=action,
            previous=store.snapshot(key),
            proposed_body=proposed_body,
        )
        _step(op, "transaction.snapshot", "success", _describe_snapshot(txn.previous))

        apply = self._apply_step(store, txn)
        try:
            apply()
            _step(op, f"store.{action.value}", "success", key)
            validation, reload_result = self.nginx.validate_and_reload()
        except (StoreError, NginxError, OSError) as exc:
            _step(op, "transaction.commit", "error", str(exc))
            logger.warning("%s %s failed, rolling back: %s", action.value, key, exc)
            return self._rollback(store, txn, exc, op)

        _step(op, "nginx.validate", "success", validation.describe())
        _step(op, "nginx.reload", "success", reload_result.describe())
        txn.outcome = TransactionOutcome.COMMITTED
        logger.info("%s %s committed", action.value, key)
        return MutationResult(
            outcome=txn.outcome,
            unit_key=key,
            action=action,
            detail="committed",
            steps=[step["name"] for step in (op.steps if op else [])],
        )

    # ------------------------------------------------------------------
    def _apply_step(
        self,
        store: ConfigurationStore,
        txn: MutationTransaction,
    ) -> Callable[[], None]:
        key = txn.unit_key
        if txn.action is MutationAction.DELETE:
            return lambda: store.delete(key)
        body = txn.proposed_body or ""
        return lambda: store.write_enabled(key, body)

    def _rollback(
        self,
        store: ConfigurationStore,
        txn: MutationTransaction,
        original: BaseException,
        op: OperationScope | None,
    ) -> MutationResult:
        detail = str(original)
        try:
            store.restore(txn.previous)
        except (StoreError, OSError) as exc:
            txn.outcome = TransactionOutcome.FATAL
            _step(op, "transaction.rollback", "error", str(exc))
            logger.error(
                "ROLLBACK FAILED for %s %s: %s (original failure: %s); "
                "live configuration may not match the store",
                txn.action.value,
                txn.unit_key,
                exc,
                detail,
            )
            return MutationResult(
                outcome=txn.outcome,
                unit_key=txn.unit_key,
                action=txn.action,
                detail=detail,
                rollback_attempted=True,
                rollback_error=str(exc),
            )

        _step(op, "transaction.rollback", "success", _describe_snapshot(txn.previous))
        reloaded = True
        try:
            self.nginx.reload()
            _step(op, "nginx.reload.rollback", "success", None)
        except ReloadFailure as exc:
            reloaded = False
            _step(op, "nginx.reload.rollback", "warning", str(exc))
            logger.warning("reload after rollback of %s failed: %s", txn.unit_key, exc)

        txn.outcome = TransactionOutcome.ROLLED_BACK
        return MutationResult(
            outcome=txn.outcome,
            unit_key=txn.unit_key,
            action=txn.action,
            detail=detail,
            rollback_attempted=True,
            reload_after_rollback=reloaded,
        )


def _step(op: OperationScope | None, name: str, status: str, detail: object) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def _describe_snapshot(snapshot: UnitSnapshot) -> str:
    if snapshot.body is None:
        return f"{snapshot.key}: absent"
    state = "enabled" if snapshot.enabled else "disabled"
    return f"{snapshot.key}: {len(snapshot.body)} bytes, {state}"


__all__ = [
    "MutationAction",
    "MutationResult",
    "MutationTransaction",
    "RollbackFailure",
    "TransactionManager",
    "TransactionOutcome",
]
