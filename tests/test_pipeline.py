"""
Tests for the Caregiver Action Pipeline.

Validates:
- Denied actions never execute and are never logged
- Allowed actions execute, then are recorded
- Failed log writes are queued, never undoing the action
- Queued records keep per-grant order and the action time
- The end-to-end caregiver lifecycle
"""

from __future__ import annotations

import pytest

from hands_and_hope.access.errors import ActivityLogError, DenyError, ValidationError
from hands_and_hope.access.evaluator import AccessEvaluator, DenyReason
from hands_and_hope.access.grants import GrantManager
from hands_and_hope.access.identity import IssuedCredential
from hands_and_hope.access.pipeline import ACTION_CAPABILITIES, CaregiverActionPipeline
from hands_and_hope.access.schema import ActivityAction, Capability
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.service import ActivityLogger


class SilentIssuer:
    def issue(self, grant):
        return IssuedCredential(str(grant.grant_id), grant.caregiver_email, "temp-password")


class TestCaregiverActionPipeline:
    """Test evaluate → execute → record."""

    def setup_method(self):
        db = Database("sqlite://")
        db.initialize()
        self.grants = GrantManager(db, credential_issuer=SilentIssuer())
        self.activity = ActivityLogger(db, retries=0, retry_delay=0)
        self.pipeline = CaregiverActionPipeline(AccessEvaluator(db), self.activity)
        self.executed = []

    def _operation(self, value="done"):
        def run():
            self.executed.append(value)
            return value
        return run

    def test_every_action_has_a_capability(self):
        assert set(ACTION_CAPABILITIES) == set(ActivityAction)

    def test_lifecycle(self):
        grant = self.grants.create_grant(
            "usr_001", "maria.garcia@email.com", "Maria Garcia", "parent", "full"
        )
        self.grants.record_login(grant.grant_id)

        outcome = self.pipeline.perform(
            grant.grant_id,
            "edited_product",
            "Updated price of Handwoven Basket to $45",
            "product",
            "Handwoven Basket",
            operation=self._operation("price updated"),
        )
        assert outcome.decision.is_allowed
        assert outcome.result == "price updated"
        assert outcome.queued is False
        assert outcome.record.sequence_number == 1
        assert self.grants.get_grant(grant.grant_id).total_actions == 1

        self.grants.revoke(grant.grant_id)
        with pytest.raises(DenyError) as exc_info:
            self.pipeline.perform(
                grant.grant_id,
                "edited_product",
                "Updated price again",
                "product",
                "Handwoven Basket",
                operation=self._operation("price updated again"),
            )
        assert exc_info.value.decision.reason == DenyReason.GRANT_INACTIVE
        assert self.executed == ["price updated"]

        page = self.activity.list_for_grant(grant.grant_id)
        assert len(page.records) == 1
        assert page.records[0].action_details == "Updated price of Handwoven Basket to $45"

    def test_denied_capability_does_not_execute(self):
        grant = self.grants.create_grant(
            "usr_001", "helper@example.com", "Sam Helper", "helper", "view_only"
        )
        self.grants.activate(grant.grant_id)

        with pytest.raises(DenyError) as exc_info:
            self.pipeline.perform(
                grant.grant_id, "withdrew_funds", "Withdrew $100", "payout",
                operation=self._operation(),
            )
        assert exc_info.value.decision.reason == DenyReason.CAPABILITY_NOT_GRANTED
        assert exc_info.value.decision.capability == Capability.WITHDRAW_MONEY
        assert self.executed == []
        assert self.activity.list_for_grant(grant.grant_id).records == []

    def test_explicit_capability_overrides_mapping(self):
        grant = self.grants.create_grant(
            "usr_001", "helper@example.com", "Sam Helper", "helper", "view_only"
        )
        self.grants.activate(grant.grant_id)

        outcome = self.pipeline.perform(
            grant.grant_id, "viewed_resource", "Opened sales report", "report",
            capability="viewFinancials",
        )
        assert outcome.decision.capability == Capability.VIEW_FINANCIALS
        assert outcome.record.action == ActivityAction.VIEWED_RESOURCE

    def test_invalid_input_is_rejected_before_evaluation(self):
        grant = self.grants.create_grant(
            "usr_001", "helper@example.com", "Sam Helper", "helper", "full"
        )
        self.grants.activate(grant.grant_id)

        with pytest.raises(ValidationError):
            self.pipeline.perform(grant.grant_id, "hacked", "x", "product",
                                  operation=self._operation())
        with pytest.raises(ValidationError):
            self.pipeline.perform(grant.grant_id, "edited_product", "x", "",
                                  operation=self._operation())
        with pytest.raises(ValidationError):
            self.pipeline.perform(grant.grant_id, "edited_product", "x", "product",
                                  operation=self._operation(), capability="root")
        assert self.executed == []

    def test_operation_failure_is_not_logged(self):
        grant = self.grants.create_grant(
            "usr_001", "helper@example.com", "Sam Helper", "helper", "full"
        )
        self.grants.activate(grant.grant_id)

        def broken():
            raise RuntimeError("shipping provider unavailable")

        with pytest.raises(RuntimeError):
            self.pipeline.perform(grant.grant_id, "updated_shipment", "x", "shipment",
                                  operation=broken)
        assert self.activity.list_for_grant(grant.grant_id).records == []

    def test_log_failure_is_queued_and_flushed(self):
        grant = self.grants.create_grant(
            "usr_001", "helper@example.com", "Sam Helper", "helper", "full"
        )
        self.grants.activate(grant.grant_id)

        real_record = self.activity.record

        def unavailable(**kwargs):
            raise ActivityLogError("storage unavailable")

        self.activity.record = unavailable
        outcome = self.pipeline.perform(
            grant.grant_id, "edited_bio", "Rewrote bio", "profile",
            operation=self._operation("bio saved"),
        )
        assert outcome.result == "bio saved"
        assert outcome.queued is True
        assert len(self.pipeline.pending_records) == 1

        assert self.pipeline.flush_pending() == 0
        assert len(self.pipeline.pending_records) == 1

        self.activity.record = real_record
        assert self.pipeline.flush_pending() == 1
        assert self.pipeline.pending_records == []

        records = self.activity.list_for_grant(grant.grant_id).records
        assert [r.action for r in records] == [ActivityAction.EDITED_BIO]


class TestQueuedActivityOrdering:
    """Test that queued records keep each grant's log in action order."""

    def setup_method(self):
        db = Database("sqlite://")
        db.initialize()
        self.grants = GrantManager(db, credential_issuer=SilentIssuer())
        self.activity = ActivityLogger(db, retries=0, retry_delay=0)
        self.pipeline = CaregiverActionPipeline(AccessEvaluator(db), self.activity)
        self.real_record = self.activity.record

        self.grant = self._active_grant("helper@example.com")

    def _active_grant(self, email):
        grant = self.grants.create_grant("usr_001", email, "Sam Helper", "helper", "full")
        self.grants.activate(grant.grant_id)
        return grant

    def _storage_down(self):
        def unavailable(**kwargs):
            raise ActivityLogError("storage unavailable")
        self.activity.record = unavailable

    def _storage_up(self):
        self.activity.record = self.real_record

    def _perform(self, details, grant=None):
        return self.pipeline.perform(
            (grant or self.grant).grant_id, "edited_product", details, "product"
        )

    def test_queued_record_is_written_before_newer_action(self):
        self._storage_down()
        assert self._perform("FIRST").queued is True
        self._storage_up()

        outcome = self._perform("SECOND")
        assert outcome.queued is False
        assert outcome.record.sequence_number == 2
        assert self.pipeline.pending_records == []

        records = self.activity.list_for_grant(self.grant.grant_id).records
        assert [(r.sequence_number, r.action_details) for r in records] == [
            (2, "SECOND"), (1, "FIRST"),
        ]
        assert records[1].timestamp <= records[0].timestamp

    def test_new_action_queues_behind_unwritten_records(self):
        self._storage_down()
        self._perform("FIRST")
        assert self._perform("SECOND").queued is True
        assert [p.action_details for p in self.pipeline.pending_records] == ["FIRST", "SECOND"]

        self._storage_up()
        assert self.pipeline.flush_pending() == 2
        records = self.activity.list_for_grant(self.grant.grant_id).records
        assert [r.action_details for r in records] == ["SECOND", "FIRST"]
        assert self.activity.verify_chain(self.grant.grant_id)[0] is True

    def test_record_keeps_the_time_the_action_completed(self):
        self._storage_down()
        self._perform("FIRST")
        queued_at = self.pipeline.pending_records[0].occurred_at
        self._storage_up()

        self.pipeline.flush_pending()
        record = self.activity.list_for_grant(self.grant.grant_id).records[0]
        assert record.timestamp.replace(tzinfo=None) == queued_at.replace(tzinfo=None)

    def test_other_grants_are_not_held_back(self):
        other = self._active_grant("tom@example.com")
        failing_grant = str(self.grant.grant_id)

        def fails_for_one_grant(**kwargs):
            if kwargs["grant_id"] == failing_grant:
                raise ActivityLogError("storage unavailable")
            return self.real_record(**kwargs)

        self.activity.record = fails_for_one_grant
        assert self._perform("STUCK").queued is True
        assert self._perform("FINE", grant=other).queued is False

        assert self.pipeline.flush_pending() == 0
        assert [p.action_details for p in self.pipeline.pending_records] == ["STUCK"]
        assert len(self.activity.list_for_grant(other.grant_id).records) == 1
