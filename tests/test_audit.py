"""
Tests for the caregiver activity audit tool.
"""

from __future__ import annotations

import sys
from uuid import uuid4

import pytest
from sqlalchemy import text

from hands_and_hope.access.grants import GrantManager
from hands_and_hope.access.identity import IssuedCredential
from hands_and_hope.ledger import audit
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.service import ActivityLogger


class SilentIssuer:
    def issue(self, grant):
        return IssuedCredential(str(grant.grant_id), grant.caregiver_email, "temp-password")


class TestActivityAudit:
    """Test the audit run against a file database."""

    def setup_method(self):
        self.url = None

    def _seed(self, tmp_path, records=3):
        self.url = f"sqlite:///{tmp_path / 'caregivers.db'}"
        db = Database(self.url)
        db.initialize()
        grants = GrantManager(db, credential_issuer=SilentIssuer())
        activity = ActivityLogger(db, retries=0)
        grant = grants.create_grant(
            "usr_001", "maria.garcia@email.com", "Maria Garcia", "parent", "full"
        )
        grants.activate(grant.grant_id)
        for i in range(records):
            activity.record(grant.grant_id, "edited_product", f"Edit {i}", "product", f"Item {i}")
        db.dispose()
        return grant

    def test_clean_database_passes(self, tmp_path):
        self._seed(tmp_path)
        assert audit.run_audit(self.url, verbose=True) is True

    def test_single_grant(self, tmp_path):
        grant = self._seed(tmp_path)
        assert audit.run_audit(self.url, grant_id=str(grant.grant_id)) is True

    def test_empty_database_passes(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'empty.db'}"
        Database(url).initialize()
        assert audit.run_audit(url) is True

    def test_tampered_record_fails(self, tmp_path):
        self._seed(tmp_path)
        db = Database(self.url)
        with db.engine.begin() as conn:
            conn.execute(
                text("UPDATE caregiver_activity SET resource_name = 'Forged' WHERE sequence_number = 3")
            )
        db.dispose()
        assert audit.run_audit(self.url) is False

    def test_main_exit_codes(self, tmp_path, monkeypatch):
        self._seed(tmp_path)
        monkeypatch.setattr(sys, "argv", ["hands-and-hope-audit", "--database-url", self.url])
        with pytest.raises(SystemExit) as exc_info:
            audit.main()
        assert exc_info.value.code == 0

    def test_unknown_grant_fails(self, tmp_path):
        self._seed(tmp_path)
        assert audit.run_audit(self.url, grant_id=str(uuid4())) is False
        assert audit.run_audit(self.url, grant_id="not-a-grant") is False

    def test_main_unknown_grant_exits_nonzero(self, tmp_path, monkeypatch):
        self._seed(tmp_path)
        monkeypatch.setattr(
            sys, "argv",
            ["hands-and-hope-audit", "--database-url", self.url, "--grant-id", str(uuid4())],
        )
        with pytest.raises(SystemExit) as exc_info:
            audit.main()
        assert exc_info.value.code == 1
