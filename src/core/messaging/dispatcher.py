"""
Scheduled message dispatch.

The dispatcher is the periodic worker that decides which scheduled messages
are due, sends each of them at most once, and reconciles their stored state
with the outcome. It is framework-agnostic: persistence and the messaging
provider are reached through the protocols below, so tests can hand it
in-memory fakes.

A run never lets one message take down the batch. Failures are logged and
counted at the per-message boundary; only a failed due-set fetch ends a run
early, and the next invocation starts over from whatever is persisted.

Concurrency model: several dispatcher replicas may run at once. Before the
provider is called, a row is claimed with a conditional update
(pending -> claimed). Only the instance whose update affected the row sends
it. Claims that outlive `claim_ttl` belonged to a dispatcher that died
mid-send; those rows are failed rather than retried, because the message may
already have gone out.

Every write names the status it expects the row to be in: pending before
the claim, claimed after it. A write that matches nothing means another
dispatcher owns the row, and it is left alone.
"""

import logging
import os
import socket
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol
from uuid import UUID

from .errors import MessagingError, PersistenceError, ProviderError
from .models import (
    DispatchReport,
    DueMessage,
    MessageStatus,
    SendFailureReason,
    SendOutcome,
    ensure_utc,
    utcnow,
)


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class MessageSender(Protocol):
    """
    Anything that can hand one message to a communications provider.

    Implementations make exactly one provider call and never retry;
    retrying is the dispatcher's job on its next cycle.
    """

    def send(self, recipient_phone: str, body: str) -> SendOutcome:
        ...


class ScheduledMessageGateway(Protocol):
    """The scheduling subset of the persistence layer the dispatcher needs."""

    def list_due_scheduled(self, now: datetime) -> list[DueMessage]: ...
    def claim_scheduled(self, message_id: UUID, worker_id: str, now: datetime) -> bool: ...
    def release_claim(self, message_id: UUID, worker_id: str, error: str) -> bool: ...
    def delete_scheduled(
        self, message_id: UUID, only_if_status: Optional[MessageStatus] = None
    ) -> bool: ...
    def update_scheduled(
        self,
        message_id: UUID,
        patch: dict[str, Any],
        only_if_status: Optional[MessageStatus] = None,
    ) -> bool: ...
    def mark_sent(self, message_id: UUID, provider_message_id: str, sent_at: datetime) -> bool: ...
    def mark_failed(
        self, message_id: UUID, error: str, only_if_status: Optional[MessageStatus] = None
    ) -> bool: ...
    def expire_stale_claims(self, cutoff: datetime) -> int: ...


class DispatchRunner(Protocol):
    """Anything that performs one dispatch run per call."""

    def run(self) -> DispatchReport: ...


def default_worker_id() -> str:
    """host:pid, unique enough to tell replicas apart in claim markers."""
    return f"{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------
# Dispatch Scheduler
# ---------------------------------------------------------------------------

class DispatchScheduler:
    """
    Runs dispatch cycles over the scheduled messages table.

    Each call to `run()` is one dispatch run:
    1. Fail claims abandoned by crashed dispatchers
    2. Fetch everything due
    3. Claim, send and reconcile each due message independently
    """

    def __init__(
        self,
        gateway: ScheduledMessageGateway,
        sender: MessageSender,
        worker_id: Optional[str] = None,
        max_attempts: int = 5,
        claim_ttl: timedelta = timedelta(minutes=10),
        stale_after: Optional[timedelta] = timedelta(hours=48),
        keep_sent: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if claim_ttl <= timedelta(0):
            raise ValueError("claim_ttl must be positive")

        self._gateway = gateway
        self._sender = sender
        self._worker_id = worker_id or default_worker_id()
        self._max_attempts = max_attempts
        self._claim_ttl = claim_ttl
        self._stale_after = stale_after
        self._keep_sent = keep_sent
        self._clock = clock

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run(self, now: Optional[datetime] = None) -> DispatchReport:
        """Execute one dispatch run and report what happened."""
        now = ensure_utc(now or self._clock())
        report = DispatchReport(started_at=now)

        logger.info(
            "Dispatch run starting",
            extra={"run_id": str(report.run_id), "worker_id": self._worker_id}
        )

        try:
            report.stale_claims = self._gateway.expire_stale_claims(now - self._claim_ttl)
        except PersistenceError as e:
            # Not fatal: the due query never returns claimed rows anyway.
            logger.error(
                "Failed to expire stale claims",
                extra={"run_id": str(report.run_id), "error": str(e)}
            )
            report.errors += 1

        try:
            due_messages = self._gateway.list_due_scheduled(now)
        except PersistenceError as e:
            logger.error(
                "Dispatch run aborted: could not load due messages",
                extra={"run_id": str(report.run_id), "error": str(e)}
            )
            report.aborted = True
            report.error = str(e)
            report.finished_at = self._clock()
            return report

        batch = self._prepare_batch(due_messages, now, report)
        report.due = len(batch)

        for due in batch:
            try:
                self._process(due, now, report)
            except MessagingError as e:
                report.errors += 1
                logger.error(
                    "Failed to process scheduled message",
                    extra={
                        "message_id": str(due.message.id),
                        "error_kind": e.kind.value,
                        "error": str(e),
                    }
                )
            except Exception:
                report.errors += 1
                logger.exception(
                    "Unexpected error processing scheduled message",
                    extra={"message_id": str(due.message.id)}
                )

        report.finished_at = self._clock()

        logger.info("Dispatch run finished", extra=report.to_dict())
        return report

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    def _prepare_batch(
        self, due_messages: list[DueMessage], now: datetime, report: DispatchReport
    ) -> list[DueMessage]:
        """
        Keep each due row once, oldest first.

        A patient joined to more than one user row would otherwise show up
        twice and be attempted twice in the same run. Rows that are not
        actually due are dropped and counted as errors.
        """
        seen: set[UUID] = set()
        batch = []
        for due in sorted(due_messages, key=lambda d: (d.message.send_at, str(d.message.id))):
            if due.message.id in seen:
                continue
            if not due.message.is_due(now):
                logger.warning(
                    "Gateway returned a message that is not due",
                    extra={
                        "message_id": str(due.message.id),
                        "status": due.message.status.value,
                    }
                )
                report.errors += 1
                continue
            seen.add(due.message.id)
            batch.append(due)
        return batch

    def _process(self, due: DueMessage, now: datetime, report: DispatchReport) -> None:
        message = due.message

        if self._stale_after is not None and now - message.send_at > self._stale_after:
            if not self._gateway.mark_failed(
                message.id, "expired", only_if_status=MessageStatus.PENDING
            ):
                self._contended(message.id, report)
                return
            logger.warning(
                "Scheduled message expired before delivery",
                extra={
                    "message_id": str(message.id),
                    "send_at": message.send_at.isoformat(),
                }
            )
            report.expired += 1
            return

        phone = due.resolved_phone
        if phone is None:
            self._skip_unaddressable(due, report)
            return

        if not self._gateway.claim_scheduled(message.id, self._worker_id, now):
            self._contended(message.id, report)
            return

        outcome = self._send(message.id, phone, message.body)

        if outcome.success:
            report.sent += 1
            self._reconcile_sent(message.id, outcome, report)
            return

        attempts = message.attempts + 1
        if not outcome.retryable or attempts >= self._max_attempts:
            logger.error(
                "Scheduled message failed permanently",
                extra={
                    "message_id": str(message.id),
                    "attempts": attempts,
                    "reason": outcome.reason.value if outcome.reason else None,
                    "detail": outcome.detail,
                }
            )
            if self._gateway.mark_failed(
                message.id, outcome.error_text, only_if_status=MessageStatus.CLAIMED
            ):
                report.failed += 1
            else:
                self._claim_lost(message.id, "mark_failed", report)
        else:
            logger.warning(
                "Scheduled message send failed, will retry next run",
                extra={
                    "message_id": str(message.id),
                    "attempts": attempts,
                    "reason": outcome.reason.value if outcome.reason else None,
                    "detail": outcome.detail,
                }
            )
            if self._gateway.release_claim(message.id, self._worker_id, outcome.error_text):
                report.retried += 1
            else:
                self._claim_lost(message.id, "release_claim", report)

    def _skip_unaddressable(self, due: DueMessage, report: DispatchReport) -> None:
        """Count a missing recipient as an attempt so the row cannot loop forever."""
        message = due.message
        error = "recipient_missing" if due.recipient is None else "recipient_phone_missing"
        attempts = message.attempts + 1

        if attempts >= self._max_attempts:
            written = self._gateway.mark_failed(
                message.id, error, only_if_status=MessageStatus.PENDING
            )
        else:
            written = self._gateway.update_scheduled(
                message.id,
                {"attempts": attempts, "last_error": error},
                only_if_status=MessageStatus.PENDING,
            )
        if not written:
            self._contended(message.id, report)
            return

        logger.warning(
            "Skipped scheduled message without a deliverable recipient",
            extra={
                "message_id": str(message.id),
                "patient_id": message.patient_id,
                "attempts": attempts,
                "error": error,
            }
        )
        report.skipped += 1

    def _send(self, message_id: UUID, phone: str, body: str) -> SendOutcome:
        try:
            return self._sender.send(phone, body)
        except ProviderError as e:
            return SendOutcome.failed(e.reason, str(e))
        except Exception as e:
            logger.exception(
                "Message sender raised instead of returning an outcome",
                extra={"message_id": str(message_id)}
            )
            return SendOutcome.failed(SendFailureReason.PROVIDER_ERROR, str(e))

    def _reconcile_sent(self, message_id: UUID, outcome: SendOutcome, report: DispatchReport) -> None:
        try:
            if self._keep_sent:
                operation = "mark_sent"
                reconciled = self._gateway.mark_sent(
                    message_id, outcome.provider_message_id or "", self._clock()
                )
            else:
                operation = "delete_scheduled"
                reconciled = self._gateway.delete_scheduled(
                    message_id, only_if_status=MessageStatus.CLAIMED
                )
        except PersistenceError as e:
            # The row stays claimed, so the stale-claim sweep fails it
            # instead of sending it again.
            report.errors += 1
            logger.error(
                "Message delivered but its scheduled row was not reconciled",
                extra={
                    "message_id": str(message_id),
                    "provider_message_id": outcome.provider_message_id,
                    "error": str(e),
                }
            )
            return

        if not reconciled:
            self._claim_lost(
                message_id, operation, report, provider_message_id=outcome.provider_message_id
            )

    def _contended(self, message_id: UUID, report: DispatchReport) -> None:
        """Another dispatcher moved the row out of pending first."""
        logger.info(
            "Scheduled message already claimed elsewhere",
            extra={"message_id": str(message_id), "worker_id": self._worker_id}
        )
        report.contended += 1

    def _claim_lost(
        self,
        message_id: UUID,
        operation: str,
        report: DispatchReport,
        provider_message_id: Optional[str] = None,
    ) -> None:
        """Our claimed row changed under us, usually by the stale-claim sweep."""
        logger.warning(
            "Scheduled message was no longer claimed by this dispatcher",
            extra={
                "message_id": str(message_id),
                "worker_id": self._worker_id,
                "operation": operation,
                "provider_message_id": provider_message_id,
            }
        )
        report.errors += 1


# ---------------------------------------------------------------------------
# Periodic Driver
# ---------------------------------------------------------------------------

def run_forever(
    scheduler: DispatchRunner,
    interval_seconds: float,
    stop_event: threading.Event,
    max_runs: Optional[int] = None,
) -> int:
    """
    Run dispatch cycles every `interval_seconds` until `stop_event` is set.

    Returns the number of runs performed.
    """
    runs = 0
    while not stop_event.is_set():
        try:
            scheduler.run()
        except Exception:
            logger.exception("Dispatch run crashed")
        runs += 1
        if max_runs is not None and runs >= max_runs:
            break
        stop_event.wait(interval_seconds)
    return runs
