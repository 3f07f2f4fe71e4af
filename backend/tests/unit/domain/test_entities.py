"""Unit tests for domain entities and value objects."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from herald.domain.entities import Notification
from herald.domain.enums import AttemptOutcome, DeliveryStatus, NotificationStatus, Priority, RateLimitLevel
from herald.domain.events import NotificationStatusChanged, to_envelope
from herald.domain.exceptions import InvalidNotificationTransitionError, RateLimitedError
from herald.domain.value_objects import BudgetConfig, ConfigTable, RateLimitRule, lookup_keys


class TestNotificationLifecycle:
    def test_defaults(self, sample_notification: Notification) -> None:
        assert sample_notification.status == NotificationStatus.QUEUED
        assert sample_notification.attempt_count == 0
        assert sample_notification.version == 0

    def test_start_sending_opens_logical_attempt(self, sample_notification: Notification) -> None:
        assert sample_notification.start_sending() == 1
        assert sample_notification.status == NotificationStatus.SENDING

    def test_void_attempt_gives_it_back(self, sample_notification: Notification) -> None:
        sample_notification.start_sending()
        sample_notification.void_attempt()
        assert sample_notification.attempt_count == 0

    def test_cannot_cancel_delivered(self, sample_notification: Notification) -> None:
        sample_notification.start_sending()
        sample_notification.mark_delivered()
        with pytest.raises(InvalidNotificationTransitionError):
            sample_notification.cancel("too late")

    def test_delivered_is_final(self, sample_notification: Notification) -> None:
        sample_notification.start_sending()
        sample_notification.mark_delivered()
        assert sample_notification.is_final
        assert not NotificationStatus.DELIVERED.can_transition_to(NotificationStatus.RETRYING)

    def test_retry_cycle(self, sample_notification: Notification) -> None:
        eligible = datetime(2026, 1, 1, 0, 0, 3, tzinfo=timezone.utc)
        sample_notification.start_sending()
        sample_notification.schedule_retry(eligible, "HTTP_500")
        assert sample_notification.status == NotificationStatus.RETRYING
        assert sample_notification.next_attempt_at == eligible
        assert sample_notification.start_sending() == 2
        assert sample_notification.next_attempt_at is None

    def test_attempts_remaining_counts_admin_extras(self, sample_notification: Notification) -> None:
        sample_notification.attempt_count = 4
        assert sample_notification.attempts_remaining(4) == 0
        sample_notification.extra_attempts = 1
        assert sample_notification.attempts_remaining(4) == 1

    def test_last_failed_provider(self, sample_notification: Notification) -> None:
        sample_notification.start_sending()
        sample_notification.record_attempt("twilio").fail("HTTP_500")
        sample_notification.record_attempt("vonage").succeed("V-1")
        assert sample_notification.last_failed_provider == "twilio"
        assert sample_notification.find_attempt("V-1").provider == "vonage"

    def test_merge_attempts_appends_unseen(self, sample_notification: Notification) -> None:
        other = Notification(
            tenant_id="acme", user_id="u-1", service_origin="auth", channel=sample_notification.channel, recipient="x"
        )
        shared = sample_notification.record_attempt("twilio")
        other.attempts.append(shared)
        other.record_attempt("vonage")
        sample_notification.merge_attempts(other)
        assert [a.provider for a in sample_notification.attempts] == ["twilio", "vonage"]


class TestProviderAttempt:
    def test_duplicate_status_is_a_no_op(self, sample_notification: Notification) -> None:
        attempt = sample_notification.record_attempt("twilio")
        attempt.succeed("SM1")
        assert attempt.apply_delivery_status(DeliveryStatus.DELIVERED)
        assert not attempt.apply_delivery_status(DeliveryStatus.DELIVERED)

    def test_terminal_status_is_not_downgraded(self, sample_notification: Notification) -> None:
        attempt = sample_notification.record_attempt("twilio")
        attempt.succeed("SM1")
        attempt.apply_delivery_status(DeliveryStatus.DELIVERED)
        assert not attempt.apply_delivery_status(DeliveryStatus.SENT)
        assert attempt.delivery_status == DeliveryStatus.DELIVERED

    def test_failure_status_fails_attempt(self, sample_notification: Notification) -> None:
        attempt = sample_notification.record_attempt("twilio")
        attempt.succeed("SM1")
        attempt.apply_delivery_status(DeliveryStatus.UNDELIVERED)
        assert attempt.outcome == AttemptOutcome.FAILED
        assert attempt.error_code == "PROVIDER_UNDELIVERED"


class TestValueObjects:
    def test_priority_escalation(self) -> None:
        assert Priority.HIGH.escalated and Priority.URGENT.escalated
        assert not Priority.NORMAL.escalated
        assert Priority.URGENT.rank > Priority.LOW.rank

    def test_lookup_keys_most_specific_first(self) -> None:
        keys = lookup_keys("acme", "auth", "sms")
        assert keys[0] == ("acme", "auth", "sms")
        assert keys[-1] == ("*", "*", "*")
        assert len(keys) == len(set(keys)) == 8

    def test_config_table_first_entry_wins(self) -> None:
        table = ConfigTable([(("a",), 1), (("a",), 2)])
        assert table.resolve([("b",), ("a",)]) == 1
        assert len(table) == 1

    def test_rate_limit_rule_validation(self) -> None:
        with pytest.raises(ValueError):
            RateLimitRule(RateLimitLevel.USER, max_requests=10, window_seconds=0, burst=1)
        with pytest.raises(ValueError):
            RateLimitRule(RateLimitLevel.USER, max_requests=10, window_seconds=60, burst=0)

    def test_budget_config_validation(self) -> None:
        with pytest.raises(ValueError):
            BudgetConfig(tenant_id="acme", monthly_cap_micros=0)
        with pytest.raises(ValueError):
            BudgetConfig(tenant_id="acme", monthly_cap_micros=10, warn_pct=120, limit_pct=100)
        assert BudgetConfig(tenant_id="acme", monthly_cap_micros=10, service_origin="auth").scope_key == "acme/auth"

    def test_rate_limited_error_rounds_retry_after_up(self) -> None:
        exc = RateLimitedError("user", 60, 0.2, datetime(2026, 1, 1, tzinfo=timezone.utc))
        assert exc.retry_after == 1
        assert exc.details["scope"] == "user"


class TestEnvelope:
    def test_wraps_event_fields(self) -> None:
        event = NotificationStatusChanged(
            notification_id="n-1", tenant_id="acme", channel="sms", previous_status="sending", status="sent"
        )
        envelope = to_envelope(event, "herald").to_dict()
        assert envelope["type"] == "notification.status_changed"
        assert envelope["subject"] == "n-1"
        assert envelope["source"] == "herald"
        assert envelope["data"]["status"] == "sent"
        assert "event_type" not in envelope["data"]
