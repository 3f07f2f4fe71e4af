"""Delivery orchestrator — the per-notification state machine.

Ties admission (rate limiter, budget enforcer), provider failover, retry
scheduling and webhook reconciliation together, and re-drives attempts a
worker abandoned while `sending`.  Every state change is saved with an
optimistic version check; when a concurrent writer wins, the change is
replayed on the fresh copy and never overrides a final state.
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence

import structlog

from herald.application.commands import (
    AdminRetryCommand,
    AdminRetryResult,
    BatchItemResult,
    BatchResult,
    CancelNotificationCommand,
    CancelResult,
    QueueNotificationCommand,
    QueueResult,
    SendResult,
)
from herald.application.services.budget import BudgetEnforcer
from herald.application.services.rate_limiter import AdmissionRequest, RateLimiter
from herald.domain.entities import AuditRecord, Notification, ProviderAttempt
from herald.domain.enums import (
    AttemptOutcome,
    BillingEvent,
    Channel,
    DeliveryStatus,
    NotificationStatus,
    Priority,
)
from herald.domain.events import (
    AdminRetryRequested,
    DeliveryFailedAlert,
    NotificationStatusChanged,
    ReconcileRequested,
)
from herald.domain.exceptions import (
    BudgetExceededError,
    ConcurrencyConflictError,
    DeliveryTimeoutError,
    DomainError,
    InvalidNotificationTransitionError,
    NotificationNotFoundError,
    ProviderUnavailableError,
    RateLimitedError,
    TemplateRenderError,
    ValidationError,
)
from herald.domain.services.retry_scheduler import RetryPolicyTable, compute_delay, run_with_timeout
from herald.domain.value_objects import RateLimitDecision, RetryPolicy
from herald.ports.outbound import (
    AtomicStore,
    AuditLog,
    DeliveryQueue,
    EventBusPort,
    NotificationRepository,
    TemplateRenderer,
)
from herald.shared.observability.metrics import (
    DELIVERY_FAILURES,
    DELIVERY_LATENCY,
    NOTIFICATIONS_TOTAL,
)
from herald.shared.providers.failover import FailoverDispatcher

logger = structlog.get_logger(__name__)

Effect = Callable[[], Awaitable[Any]]
Mutation = Callable[[Notification], "list[Effect] | None"]

_MAX_SAVE_ATTEMPTS = 5
_ADMIN_RETRY_FROM = frozenset(
    {
        NotificationStatus.FAILED,
        NotificationStatus.TIMED_OUT,
        NotificationStatus.RETRYING,
        NotificationStatus.SENT,
    }
)


class DeliveryOrchestrator:
    """Queue, send, retry, cancel and reconcile notifications."""

    def __init__(
        self,
        *,
        repository: NotificationRepository,
        queue: DeliveryQueue,
        rate_limiter: RateLimiter,
        budget: BudgetEnforcer,
        dispatcher: FailoverDispatcher,
        retry_policies: RetryPolicyTable,
        renderer: TemplateRenderer,
        event_bus: EventBusPort,
        audit_log: AuditLog,
        callback_store: AtomicStore,
        sync_timeout_s: float = 2.0,
        batch_max_items: int = 100,
        batch_concurrency: int = 10,
        stall_grace_s: float = 30.0,
        parked_callback_ttl_s: float = 3600.0,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._repo = repository
        self._queue = queue
        self._rate_limiter = rate_limiter
        self._budget = budget
        self._dispatcher = dispatcher
        self._policies = retry_policies
        self._renderer = renderer
        self._event_bus = event_bus
        self._audit = audit_log
        self._sync_timeout = sync_timeout_s
        self._batch_max = batch_max_items
        self._batch_concurrency = batch_concurrency
        self._callbacks = callback_store
        self._stall_grace = stall_grace_s
        self._parked_ttl = parked_callback_ttl_s
        self._clock = clock
        self._rng = rng or random.Random()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def policy_for(self, notification: Notification) -> RetryPolicy:
        return self._policies.lookup(notification.service_origin, notification.channel.value)

    def stall_after(self, notification: Notification) -> float:
        """Seconds after its last change at which a `sending` notification counts as abandoned."""
        providers = max(1, len(self._dispatcher.router.handles(notification.channel)))
        return self.policy_for(notification).attempt_timeout_seconds * providers + self._stall_grace

    # ═══════════════════════════════════════════════════════════
    #  Admission API
    # ═══════════════════════════════════════════════════════════
    async def queue(self, cmd: QueueNotificationCommand) -> QueueResult:
        """Accept a notification for asynchronous delivery.

        Immediate notifications are admitted now and admission errors are
        raised with nothing persisted; scheduled ones are admitted when they
        become due.
        """
        if cmd.idempotency_key:
            existing = await self._repo.get_by_idempotency_key(cmd.tenant_id, cmd.idempotency_key)
            if existing is not None:
                logger.info("notification_idempotent_replay", notification_id=existing.id)
                return QueueResult(existing.id, existing.status, duplicate=True)

        notification = await self._build(cmd)
        log = logger.bind(
            notification_id=notification.id,
            tenant_id=notification.tenant_id,
            channel=notification.channel.value,
        )
        now = self._clock()
        decision: RateLimitDecision | None = None
        scheduled = notification.scheduled_for is not None and notification.scheduled_for.timestamp() > now
        if not scheduled:
            decision = await self._admit(notification, cmd)
            notification.admitted = True

        await self._repo.add(notification)
        eligible = notification.scheduled_for.timestamp() if scheduled else now
        await self._queue.enqueue(notification.id, eligible, notification.priority.rank)
        NOTIFICATIONS_TOTAL.labels(channel=notification.channel.value, status="queued").inc()
        log.info("notification_queued", scheduled=scheduled, priority=notification.priority.value)
        return QueueResult(notification.id, notification.status, rate_limit=decision)

    async def queue_batch(self, commands: Sequence[QueueNotificationCommand]) -> BatchResult:
        """Queue up to ``batch_max_items`` notifications with bounded parallelism.

        One item's failure never aborts the others; results keep input order.
        """
        if not commands:
            raise ValidationError("Batch must contain at least one notification")
        if len(commands) > self._batch_max:
            raise ValidationError(f"Batch exceeds the maximum of {self._batch_max} notifications")

        semaphore = asyncio.Semaphore(self._batch_concurrency)

        async def admit_one(index: int, cmd: QueueNotificationCommand) -> BatchItemResult:
            async with semaphore:
                try:
                    result = await self.queue(cmd)
                except DomainError as exc:
                    return BatchItemResult(index, False, error_code=exc.code, error=exc.message)
                except Exception as exc:
                    logger.exception("batch_item_failed", index=index, error=str(exc))
                    return BatchItemResult(index, False, error_code="INTERNAL_ERROR", error=str(exc))
                return BatchItemResult(index, True, result.notification_id, result.status)

        results = await asyncio.gather(*(admit_one(i, c) for i, c in enumerate(commands)))
        batch = BatchResult(list(results))
        logger.info("batch_queued", total=len(commands), succeeded=batch.succeeded, failed=batch.failed)
        return batch

    async def cancel(self, cmd: CancelNotificationCommand) -> CancelResult:
        notification = await self._load(cmd.notification_id, cmd.tenant_id)
        outcome: dict[str, bool] = {"flagged": False}

        def apply(n: Notification) -> list[Effect]:
            if n.status in (NotificationStatus.QUEUED, NotificationStatus.RETRYING):
                previous = n.status
                n.cancel(cmd.reason or None, self._now())
                return [lambda: self._queue.remove(n.id), self._status_effect(n, previous)]
            if n.status == NotificationStatus.SENDING:
                n.cancel_requested = True
                outcome["flagged"] = True
                return []
            raise InvalidNotificationTransitionError(n.status.value, NotificationStatus.CANCELLED.value)

        saved = await self._commit(notification, apply)
        logger.info(
            "notification_cancel",
            notification_id=saved.id,
            status=saved.status.value,
            best_effort=outcome["flagged"],
            reason=cmd.reason,
        )
        return CancelResult(saved.id, saved.status, cancel_requested=saved.cancel_requested)

    # ═══════════════════════════════════════════════════════════
    #  Synchronous delivery
    # ═══════════════════════════════════════════════════════════
    async def send_now(self, cmd: QueueNotificationCommand, timeout: float | None = None) -> SendResult:
        """Deliver within a hard timeout; never queues a retry.

        Raises:
            DeliveryTimeoutError: the call did not finish within ``timeout``.
            ProviderUnavailableError: every provider for the channel is open.
        """
        timeout = timeout or self._sync_timeout
        notification = await self._build(cmd)
        notification.scheduled_for = None
        decision = await self._admit(notification, cmd)
        notification.admitted = True
        policy = self.policy_for(notification)
        log = logger.bind(notification_id=notification.id, channel=notification.channel.value, mode="sync")

        notification.start_sending(self._now())
        await self._repo.add(notification)

        try:
            result = await run_with_timeout(
                self._dispatcher.dispatch(
                    notification,
                    policy.attempt_timeout_seconds,
                    on_accepted=self._persist_accepted(notification),
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            def timed_out(n: Notification) -> list[Effect]:
                for attempt in n.attempts:
                    if attempt.outcome == AttemptOutcome.PENDING or attempt.error_code == "CANCELLED":
                        attempt.fail("DELIVERY_TIMEOUT", f"Synchronous send exceeded {timeout:g}s", self._now())
                if n.status != NotificationStatus.SENDING:
                    return []
                n.time_out(self._now())
                return [self._status_effect(n, NotificationStatus.SENDING)]

            await self._commit(notification, timed_out)
            log.warning("sync_send_timed_out", timeout_s=timeout)
            raise DeliveryTimeoutError(timeout, notification.id)
        except ProviderUnavailableError as exc:
            await self._commit(notification, self._fail_mutation("PROVIDER_UNAVAILABLE", exc.message))
            raise
        except Exception as exc:
            await self._commit(notification, self._fail_mutation("DISPATCH_ERROR", f"{type(exc).__name__}: {exc}"))
            log.error("sync_send_interrupted", error=str(exc))
            raise

        if result.success and result.handle is not None and result.attempt is not None:
            saved = await self._commit(
                notification,
                self._accepted_mutation(result.handle.provider_id, result.confirms_delivery, result.attempt.id),
            )
            if result.provider_message_id:
                saved = await self._replay_parked(result.provider_message_id) or saved
        else:
            saved = await self._commit(
                notification, self._fail_mutation(result.error_code or "PROVIDER_ERROR", result.error_message)
            )
        log.info("sync_send_completed", status=saved.status.value, provider=result.handle.provider_id if result.handle else None)
        return SendResult(
            notification_id=saved.id,
            status=saved.status,
            provider_message_id=result.provider_message_id if result.success else None,
            provider=result.handle.provider_id if result.handle else None,
            error_code=None if result.success else result.error_code,
            rate_limit=decision,
        )

    # ═══════════════════════════════════════════════════════════
    #  Worker path
    # ═══════════════════════════════════════════════════════════
    async def process(self, notification_id: str) -> Notification | None:
        """Run one logical attempt for a notification claimed from the queue."""
        notification = await self._repo.get(notification_id)
        if notification is None:
            logger.warning("process_unknown_notification", notification_id=notification_id)
            return None
        log = logger.bind(notification_id=notification.id, channel=notification.channel.value)

        if notification.status == NotificationStatus.SENDING:
            return await self.recover_stalled(notification)
        if notification.status not in (NotificationStatus.QUEUED, NotificationStatus.RETRYING):
            log.debug("process_skipped", status=notification.status.value)
            return notification

        if notification.cancel_requested:
            return await self._commit(notification, self._cancel_mutation("Cancelled before attempt"))

        if notification.status == NotificationStatus.QUEUED and not notification.admitted:
            admitted = await self._admit_scheduled(notification)
            if admitted is not True:
                return admitted

        policy = self.policy_for(notification)
        if notification.attempts_remaining(policy.max_attempts) <= 0:
            return await self._commit(notification, self._fail_mutation("RETRY_EXHAUSTED", None, alert=True))

        previous = notification.status
        notification.start_sending(self._now())
        try:
            await self._repo.save(notification)
        except ConcurrencyConflictError:
            log.info("process_lost_race")
            return await self._repo.get(notification_id)

        try:
            await self._status_effect(notification, previous)()
            return await self._attempt(notification, policy)
        except Exception as exc:
            # The next claim of this entry settles the attempt through recover_stalled
            await self._queue.enqueue(
                notification.id, self._clock() + self.stall_after(notification), notification.priority.rank
            )
            log.error("attempt_interrupted", attempt=notification.attempt_count, error=str(exc))
            raise

    async def _attempt(self, notification: Notification, policy: RetryPolicy) -> Notification:
        try:
            result = await self._dispatcher.dispatch(
                notification,
                policy.attempt_timeout_seconds,
                avoid=notification.last_failed_provider,
                force_provider=notification.forced_provider,
                on_accepted=self._persist_accepted(notification),
            )
        except ProviderUnavailableError as exc:
            return await self._settle_failure(notification, policy, exc.code, exc.message, unavailable=exc)
        except Exception as exc:
            logger.error("dispatch_failed", notification_id=notification.id, error=str(exc))
            return await self._settle_failure(
                notification, policy, "DISPATCH_ERROR", f"{type(exc).__name__}: {exc}"
            )

        if result.success and result.handle is not None and result.attempt is not None:
            saved = await self._commit(
                notification,
                self._accepted_mutation(result.handle.provider_id, result.confirms_delivery, result.attempt.id),
            )
            if result.provider_message_id:
                return await self._replay_parked(result.provider_message_id) or saved
            return saved
        return await self._settle_failure(
            notification, policy, result.error_code or "PROVIDER_ERROR", result.error_message
        )

    async def _settle_failure(
        self,
        notification: Notification,
        policy: RetryPolicy,
        error_code: str,
        error_message: str | None,
        *,
        unavailable: ProviderUnavailableError | None = None,
    ) -> Notification:
        """Schedule the next logical attempt, or fail once none are left."""
        attempt_index = max(notification.attempt_count - (2 if unavailable else 1), 0)
        delay = compute_delay(attempt_index, policy, self._rng)
        if unavailable is not None:
            delay = max(delay, unavailable.retry_after_seconds)
        eligible_at = self._clock() + delay

        saved = await self._commit(
            notification,
            self._retry_mutation(policy, error_code, error_message, eligible_at, void=unavailable is not None),
        )
        logger.info(
            "attempt_failed",
            notification_id=saved.id,
            error_code=error_code,
            status=saved.status.value,
            attempt=saved.attempt_count,
            retry_in_s=round(delay, 3) if saved.status == NotificationStatus.RETRYING else None,
        )
        return saved

    async def recover_stalled(self, notification: Notification) -> Notification:
        """Settle an attempt a worker left in `sending` without finishing it.

        Before the stall deadline the notification is only re-queued for the
        deadline.  After it, an attempt a gateway already accepted is
        finalised without a resend; anything else counts as a failed attempt.
        """
        deadline = notification.updated_at.timestamp() + self.stall_after(notification)
        if self._clock() < deadline:
            await self._queue.enqueue(notification.id, deadline, notification.priority.rank)
            return notification

        log = logger.bind(notification_id=notification.id, attempt=notification.attempt_count)
        accepted_id = self._accepted_attempt_id(notification)
        accepted = next((a for a in notification.attempts if a.id == accepted_id), None)
        if accepted is not None and accepted.outcome == AttemptOutcome.SUCCEEDED:
            handle = self._dispatcher.router.get(notification.channel, accepted.provider)
            confirms = handle.config.confirms_delivery if handle is not None else True
            saved = await self._commit(notification, self._accepted_mutation(accepted.provider, confirms, accepted.id))
            log.warning("stalled_attempt_recovered", provider=accepted.provider, status=saved.status.value)
            if accepted.provider_message_id:
                return await self._replay_parked(accepted.provider_message_id) or saved
            return saved

        log.warning("stalled_attempt_interrupted")
        return await self._settle_failure(
            notification,
            self.policy_for(notification),
            "DELIVERY_INTERRUPTED",
            "Attempt did not complete before the stall deadline",
        )

    async def sweep_stalled(self, limit: int = 100) -> int:
        """Recover `sending` notifications nobody is going to finish.  Returns how many were settled."""
        cutoff = self._at(self._clock() - self._stall_grace)
        recovered = 0
        for notification in await self._repo.list_stalled(cutoff, limit):
            try:
                saved = await self.recover_stalled(notification)
            except Exception as exc:
                logger.exception("stalled_recovery_failed", notification_id=notification.id, error=str(exc))
                continue
            if saved.status != NotificationStatus.SENDING:
                recovered += 1
        if recovered:
            logger.warning("stalled_notifications_recovered", count=recovered)
        return recovered

    async def _admit_scheduled(self, notification: Notification) -> Notification | bool:
        """Admission on dequeue.  Returns True when admitted, else the saved notification."""
        request = self._admission_request(notification)
        try:
            await self._rate_limiter.check_admission(request)
        except RateLimitedError as exc:
            await self._queue.enqueue(notification.id, exc.reset_at.timestamp(), notification.priority.rank)
            logger.info(
                "scheduled_admission_deferred",
                notification_id=notification.id,
                scope=exc.scope,
                retry_after_s=exc.retry_after,
            )
            return notification
        try:
            await self._budget.check_budget(notification.cost_scope, notification.priority)
        except BudgetExceededError as exc:
            return await self._commit(notification, self._fail_mutation(exc.code, exc.message))
        notification.admitted = True
        return True

    # ═══════════════════════════════════════════════════════════
    #  Webhook reconciliation
    # ═══════════════════════════════════════════════════════════
    async def reconcile(self, event: ReconcileRequested) -> Notification | None:
        """Apply an out-of-band gateway status to the matching attempt.

        Duplicate callbacks change nothing.  A ``delivered`` status finalises
        the notification and drops any scheduled retry; a failure of the
        attempt the notification is waiting on triggers an immediate retry
        through a different provider.  A callback for a message id not stored
        yet is parked and replayed once the accepted attempt is saved.
        """
        status = DeliveryStatus(event.status)
        notification = await self._repo.get_by_provider_message_id(event.provider_message_id)
        log = logger.bind(provider_message_id=event.provider_message_id, delivery_status=status.value)
        if notification is None:
            await self._park(event.provider_message_id, self._parked_entry(event))
            # The accepted attempt may have been saved while parking
            if await self._repo.get_by_provider_message_id(event.provider_message_id) is None:
                log.info("reconcile_parked")
                return None
            return await self._replay_parked(event.provider_message_id)

        policy = self.policy_for(notification)
        now_ts = self._clock()

        def apply(n: Notification) -> list[Effect] | None:
            attempt = n.find_attempt(event.provider_message_id)
            if attempt is None:
                return None
            awaited = n.status == NotificationStatus.SENT and self._accepted_attempt_id(n) == attempt.id
            if not attempt.apply_delivery_status(status, self._at(now_ts)):
                return None
            if status == DeliveryStatus.DELIVERED:
                if n.status.is_final:
                    return []
                previous = n.status
                n.mark_delivered(self._at(now_ts))
                effects: list[Effect] = [lambda: self._queue.remove(n.id), self._status_effect(n, previous)]
                # From `sending` the acceptance path no longer bills
                billable_on = self._budget.cost_for(n.channel).billable_on
                if billable_on == BillingEvent.DELIVERY or previous == NotificationStatus.SENDING:
                    effects.append(self._bill_effect(n, attempt.provider))
                return effects
            if status.is_failure:
                if event.error_code:
                    attempt.error_code = event.error_code
                if not awaited:
                    return []
                return self._reported_failure(n, attempt, policy, now_ts)
            return []

        saved = await self._commit(notification, apply)
        log.info("reconciled", notification_id=saved.id, status=saved.status.value)
        return saved

    def _reported_failure(
        self, n: Notification, attempt: ProviderAttempt, policy: RetryPolicy, now_ts: float
    ) -> list[Effect]:
        previous = n.status
        if not n.cancel_requested and n.attempts_remaining(policy.max_attempts) > 0:
            n.schedule_retry(self._at(now_ts), attempt.error_code, "Provider reported failure", self._at(now_ts))
            return [
                self._status_effect(n, previous),
                lambda: self._queue.enqueue(n.id, now_ts, Priority.URGENT.rank),
            ]
        return self._fail_mutation(attempt.error_code or "PROVIDER_FAILED", "Provider reported failure", alert=True)(n)

    @staticmethod
    def _parked_key(provider_message_id: str) -> str:
        return f"reconcile:parked:{provider_message_id}"

    @staticmethod
    def _parked_entry(event: ReconcileRequested) -> dict[str, Any]:
        return {
            "family": event.family,
            "status": event.status,
            "error_code": event.error_code,
            "raw_status": event.raw_status,
        }

    async def _park(self, provider_message_id: str, *entries: dict[str, Any]) -> None:
        def push(current: list[dict[str, Any]] | None) -> tuple[list[dict[str, Any]], None]:
            return [*(current or []), *entries], None

        await self._callbacks.compare_and_update(
            self._parked_key(provider_message_id), push, ttl_seconds=self._parked_ttl
        )

    async def _replay_parked(self, provider_message_id: str) -> Notification | None:
        """Reconcile callbacks parked for ``provider_message_id``, oldest first."""
        parked: list[dict[str, Any]] = await self._callbacks.compare_and_update(
            self._parked_key(provider_message_id), lambda current: (None, current or [])
        )
        saved: Notification | None = None
        for index, entry in enumerate(parked):
            try:
                saved = await self.reconcile(ReconcileRequested(provider_message_id=provider_message_id, **entry))
            except Exception:
                await self._park(provider_message_id, *parked[index:])
                raise
        if parked:
            logger.info("parked_callbacks_replayed", provider_message_id=provider_message_id, count=len(parked))
        return saved

    def _persist_accepted(self, notification: Notification) -> Callable[[ProviderAttempt], Awaitable[None]]:
        """Store the accepted attempt while the notification is still `sending`."""

        async def persist(attempt: ProviderAttempt) -> None:
            try:
                await self._commit(notification, lambda n: [])
            except Exception as exc:
                logger.warning(
                    "accepted_attempt_persist_failed",
                    notification_id=notification.id,
                    provider_message_id=attempt.provider_message_id,
                    error=str(exc),
                )

        return persist

    @staticmethod
    def _accepted_attempt_id(notification: Notification) -> str | None:
        for attempt in reversed(notification.attempts):
            if attempt.attempt_number != notification.attempt_count:
                break
            if attempt.provider_message_id is not None:
                return attempt.id
        return None

    # ═══════════════════════════════════════════════════════════
    #  Admin
    # ═══════════════════════════════════════════════════════════
    async def admin_retry(self, cmd: AdminRetryCommand) -> AdminRetryResult:
        """Grant one extra logical attempt and enqueue it immediately."""
        if not cmd.reason or not cmd.reason.strip():
            raise ValidationError("Admin retry requires a reason")
        notification = await self._load(cmd.notification_id)
        if cmd.force_provider is not None:
            if self._dispatcher.router.get(notification.channel, cmd.force_provider) is None:
                raise ValidationError(
                    f"Provider {cmd.force_provider!r} does not serve channel {notification.channel.value!r}"
                )
        now_ts = self._clock()
        audit = AuditRecord(
            actor=cmd.actor,
            action="notification.admin_retry",
            target_id=notification.id,
            reason=cmd.reason,
            occurred_at=self._at(now_ts),
        )

        def apply(n: Notification) -> list[Effect]:
            if n.status not in _ADMIN_RETRY_FROM:
                raise InvalidNotificationTransitionError(n.status.value, NotificationStatus.RETRYING.value)
            previous = n.status
            audit.details.update(previous_status=previous.value, force_provider=cmd.force_provider)
            n.extra_attempts += 1
            n.forced_provider = cmd.force_provider
            n.cancel_requested = False
            n.schedule_retry(self._at(now_ts), n.error_code, n.error_message, self._at(now_ts))
            effects: list[Effect] = [lambda: self._queue.enqueue(n.id, now_ts, Priority.URGENT.rank)]
            if previous != NotificationStatus.RETRYING:
                effects.append(self._status_effect(n, previous))
            return effects

        saved = await self._commit(notification, apply)
        await self._audit.append(audit)
        await self._event_bus.publish(
            AdminRetryRequested(
                notification_id=saved.id,
                retry_attempt_id=audit.id,
                actor=cmd.actor,
                reason=cmd.reason,
                force_provider=cmd.force_provider,
            )
        )
        logger.warning(
            "admin_retry",
            notification_id=saved.id,
            actor=cmd.actor,
            reason=cmd.reason,
            force_provider=cmd.force_provider,
        )
        return AdminRetryResult(audit.id, saved.id, saved.status)

    # ═══════════════════════════════════════════════════════════
    #  Building & admission
    # ═══════════════════════════════════════════════════════════
    async def _build(self, cmd: QueueNotificationCommand) -> Notification:
        for name in ("tenant_id", "user_id", "service_origin", "recipient"):
            if not str(getattr(cmd, name) or "").strip():
                raise ValidationError(f"{name} is required")
        try:
            channel = Channel(cmd.channel)
        except ValueError:
            raise ValidationError(f"Unsupported channel {cmd.channel!r}") from None
        try:
            priority = Priority(cmd.priority)
        except ValueError:
            raise ValidationError(f"Unsupported priority {cmd.priority!r}") from None

        scheduled_for = cmd.scheduled_for
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=timezone.utc)

        subject, body = await self._render(cmd)
        notification = Notification(
            tenant_id=cmd.tenant_id,
            user_id=cmd.user_id,
            service_origin=cmd.service_origin,
            channel=channel,
            recipient=cmd.recipient,
            priority=priority,
            subject=subject,
            body=body,
            locale=cmd.locale,
            template_key=cmd.template_key,
            scheduled_for=scheduled_for,
            idempotency_key=cmd.idempotency_key,
            metadata=dict(cmd.metadata),
            created_at=self._now(),
            updated_at=self._now(),
        )
        if cmd.correlation_id:
            notification.correlation_id = cmd.correlation_id
        return notification

    async def _render(self, cmd: QueueNotificationCommand) -> tuple[str | None, str]:
        if cmd.template_key:
            try:
                return await self._renderer.render(cmd.template_key, cmd.variables, cmd.locale)
            except TemplateRenderError as exc:
                if cmd.body:
                    logger.warning("template_fallback_prerendered", template_key=cmd.template_key, error=exc.message)
                    return cmd.subject, cmd.body
                raise
        if not cmd.body:
            raise ValidationError("Either body or template_key is required")
        return cmd.subject, cmd.body

    @staticmethod
    def _admission_request(notification: Notification) -> AdmissionRequest:
        return AdmissionRequest(
            tenant_id=notification.tenant_id,
            user_id=notification.user_id,
            service_origin=notification.service_origin,
            channel=notification.channel.value,
        )

    async def _admit(self, notification: Notification, cmd: QueueNotificationCommand) -> RateLimitDecision | None:
        """Rate limit, then budget.  Errors propagate to the caller."""
        decision = await self._rate_limiter.check_admission(
            self._admission_request(notification), override=cmd.override
        )
        await self._budget.check_budget(notification.cost_scope, notification.priority)
        return decision

    async def _load(self, notification_id: str, tenant_id: str | None = None) -> Notification:
        notification = await self._repo.get(notification_id)
        if notification is None or (tenant_id is not None and notification.tenant_id != tenant_id):
            raise NotificationNotFoundError(notification_id)
        return notification

    # ═══════════════════════════════════════════════════════════
    #  Mutations & effects
    # ═══════════════════════════════════════════════════════════
    async def _commit(self, notification: Notification, mutate: Mutation) -> Notification:
        """Apply ``mutate`` and save, replaying it on a fresh copy after a version clash.

        ``mutate`` returns the effects to run once the save succeeded, or
        ``None`` when nothing changed and no save is needed.
        """
        current = notification
        for _ in range(_MAX_SAVE_ATTEMPTS):
            effects = mutate(current)
            if effects is None:
                return current
            try:
                await self._repo.save(current)
            except ConcurrencyConflictError:
                latest = await self._repo.get(current.id)
                if latest is None:
                    raise NotificationNotFoundError(current.id) from None
                latest.merge_attempts(current)
                logger.debug("save_conflict_replayed", notification_id=current.id, version=latest.version)
                current = latest
                continue
            for effect in effects:
                await effect()
            return current
        raise ConcurrencyConflictError(notification.id, notification.version)

    def _accepted_mutation(self, provider: str, confirms: bool, attempt_id: str | None = None) -> Mutation:
        def apply(n: Notification) -> list[Effect]:
            n.forced_provider = None
            if n.status != NotificationStatus.SENDING:
                # Reconciled or cancelled concurrently; keep that state
                return []
            attempt = next((a for a in n.attempts if a.id == attempt_id), None)
            if attempt is not None and attempt.delivery_status is not None and attempt.delivery_status.is_failure:
                # The gateway reported this send as failed before it was settled
                return self._reported_failure(n, attempt, self.policy_for(n), self._clock())
            if confirms:
                n.mark_sent(self._now())
            else:
                n.mark_delivered(self._now())
            effects: list[Effect] = [self._status_effect(n, NotificationStatus.SENDING)]
            billable_on = self._budget.cost_for(n.channel).billable_on
            if billable_on == BillingEvent.SEND or not confirms:
                effects.append(self._bill_effect(n, provider))
            latency = max(0.0, self._clock() - n.created_at.timestamp())
            DELIVERY_LATENCY.labels(channel=n.channel.value).observe(latency)
            return effects

        return apply

    def _retry_mutation(
        self,
        policy: RetryPolicy,
        error_code: str,
        error_message: str | None,
        eligible_at: float,
        *,
        void: bool = False,
    ) -> Mutation:
        def apply(n: Notification) -> list[Effect]:
            n.forced_provider = None
            if n.status != NotificationStatus.SENDING:
                return []
            for attempt in n.attempts:
                if attempt.outcome == AttemptOutcome.PENDING:
                    attempt.fail(error_code, error_message, self._now())
            if n.cancel_requested:
                return self._cancel_mutation("Cancel requested during send")(n)
            if void:
                n.void_attempt()
            if n.attempts_remaining(policy.max_attempts) > 0:
                n.schedule_retry(self._at(eligible_at), error_code, error_message, self._now())
                return [
                    self._status_effect(n, NotificationStatus.SENDING),
                    lambda: self._queue.enqueue(n.id, eligible_at, n.priority.rank),
                ]
            return self._fail_mutation(error_code, error_message, alert=True)(n)

        return apply

    def _fail_mutation(self, error_code: str, error_message: str | None, *, alert: bool = False) -> Mutation:
        def apply(n: Notification) -> list[Effect]:
            if n.status.is_terminal:
                return []
            previous = n.status
            n.fail(error_code, error_message, self._now())
            effects: list[Effect] = [self._status_effect(n, previous)]
            if alert:
                effects.append(self._alert_effect(n))
            return effects

        return apply

    def _cancel_mutation(self, reason: str) -> Mutation:
        def apply(n: Notification) -> list[Effect]:
            if not n.status.can_transition_to(NotificationStatus.CANCELLED):
                return []
            previous = n.status
            n.cancel(reason, self._now())
            return [lambda: self._queue.remove(n.id), self._status_effect(n, previous)]

        return apply

    def _status_effect(self, notification: Notification, previous: NotificationStatus) -> Effect:
        event = NotificationStatusChanged(
            notification_id=notification.id,
            tenant_id=notification.tenant_id,
            channel=notification.channel.value,
            previous_status=previous.value,
            status=notification.status.value,
            attempt_count=notification.attempt_count,
            error_code=notification.error_code,
        )

        async def publish() -> None:
            NOTIFICATIONS_TOTAL.labels(channel=event.channel, status=event.status).inc()
            await self._event_bus.publish(event)

        return publish

    def _alert_effect(self, notification: Notification) -> Effect:
        alert = DeliveryFailedAlert(
            notification_id=notification.id,
            tenant_id=notification.tenant_id,
            service_origin=notification.service_origin,
            channel=notification.channel.value,
            attempts=notification.attempt_count,
            error_code=notification.error_code,
            error_message=notification.error_message,
            providers=tuple(a.provider for a in notification.attempts),
        )

        async def publish() -> None:
            DELIVERY_FAILURES.labels(channel=alert.channel).inc()
            logger.error(
                "delivery_failed_terminal",
                notification_id=alert.notification_id,
                attempts=alert.attempts,
                error_code=alert.error_code,
            )
            await self._event_bus.publish(alert)

        return publish

    def _bill_effect(self, notification: Notification, provider: str) -> Effect:
        async def bill() -> None:
            await self._budget.record_cost(
                notification.cost_scope,
                notification.channel,
                provider=provider,
                notification_id=notification.id,
            )

        return bill

    @staticmethod
    def _at(epoch: float) -> datetime:
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
