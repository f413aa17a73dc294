"""Unit tests for auth/authorization.py -- the AuthorizationGate.

Covers:
- Rule priority: admin identity, active user, individual entry, domain, invite
- Domain matching is exact (no suffix or substring matches)
- Invite codes authorize exactly max_uses times, then report expired
- Invite expiry is checked at redemption time
- Access requests are idempotent and reopen rejected entries
- Approval / rejection append notes and notify the requester
- Allow-list administration (identities, domains, invite generation)
"""

from unittest.mock import patch

import pytest

from auth.models import AuthorizationEntry, EntryStatus, User
from conftest import ADMIN_EMAIL, ADMIN_PHONE


@pytest.fixture
def users(stores):
    return stores[0]


@pytest.fixture
def entries(stores):
    return stores[1]


# ---------------------------------------------------------------------------
# check_authorization
# ---------------------------------------------------------------------------


class TestCheckAuthorization:
    def test_admin_identity(self, gate):
        result = gate.check_authorization(email=ADMIN_EMAIL.upper())
        assert result.authorized is True
        assert result.method == "admin"
        assert gate.check_authorization(phone="+55 11 90000-0000").method == "admin"

    def test_existing_active_user(self, gate, users):
        users.create_user(User(email="ana@corp.com"))
        result = gate.check_authorization(email="ana@corp.com")
        assert result.authorized is True
        assert result.method == "email"

    def test_inactive_user_is_not_enough(self, gate, users):
        users.create_user(User(email="gone@corp.com", is_active=False))
        result = gate.check_authorization(email="gone@corp.com")
        assert result.authorized is False
        assert result.status is EntryStatus.REJECTED

    def test_individual_phone_entry_matches_normalized_input(self, gate, entries):
        entries.create_entry(AuthorizationEntry(phone="+5511988887777"))
        result = gate.check_authorization(phone="+55 (11) 98888-7777")
        assert result.authorized is True
        assert result.method == "phone"

    def test_pending_entry_does_not_authorize(self, gate, entries):
        entries.create_entry(AuthorizationEntry(email="new@x.com", status=EntryStatus.PENDING))
        result = gate.check_authorization(email="new@x.com")
        assert result.authorized is False
        assert result.status is EntryStatus.PENDING

    def test_unknown_identity_rejected(self, gate):
        result = gate.check_authorization(email="stranger@x.com")
        assert result.authorized is False
        assert result.status is EntryStatus.REJECTED

    def test_invalid_input(self, gate):
        assert gate.check_authorization(email="not-an-email").authorized is False
        assert gate.check_authorization().authorized is False


class TestDomainAuthorization:
    def test_exact_domain_matches(self, gate, entries):
        entries.create_entry(AuthorizationEntry(domain="acme.com"))
        result = gate.check_authorization(email="bob@acme.com")
        assert result.authorized is True
        assert result.method == "domain"

    @pytest.mark.parametrize("email", ["bob@notacme.com", "bob@sub.acme.com", "bob@acme.com.br"])
    def test_other_domains_do_not_match(self, gate, entries, email):
        entries.create_entry(AuthorizationEntry(domain="acme.com"))
        assert gate.check_authorization(email=email).authorized is False

    def test_inactive_domain_ignored(self, gate, entries):
        entries.create_entry(AuthorizationEntry(domain="acme.com", status=EntryStatus.EXPIRED))
        assert gate.check_authorization(email="bob@acme.com").authorized is False


class TestInviteCodes:
    def _invite(self, gate, code="AB12CD34", **kwargs):
        with patch("auth.authorization.random_invite_code", return_value=code):
            result = gate.generate_invite_code(created_by="admin", **kwargs)
        assert result.success is True
        return result

    def test_single_use_invite(self, gate, entries):
        self._invite(gate, max_uses=1)
        first = gate.check_authorization(invite_code="AB12CD34")
        assert first.authorized is True
        assert first.method == "invite_code"
        entry = entries.find_by_invite_code("AB12CD34")
        assert entry.used_count == 1
        assert entry.status is EntryStatus.EXPIRED

        second = gate.check_authorization(invite_code="AB12CD34")
        assert second.authorized is False
        assert second.status is EntryStatus.EXPIRED

    def test_invite_authorizes_exactly_max_uses(self, gate):
        self._invite(gate, max_uses=3)
        outcomes = [gate.check_authorization(invite_code="AB12CD34").authorized for _ in range(4)]
        assert outcomes == [True, True, True, False]

    def test_invite_code_is_case_insensitive(self, gate):
        self._invite(gate)
        assert gate.check_authorization(invite_code=" ab12cd34 ").authorized is True

    def test_expired_invite_rejected_and_flipped(self, gate, entries, clock):
        self._invite(gate, expiry_days=30, max_uses=5)
        clock.advance(days=31)
        result = gate.check_authorization(invite_code="AB12CD34")
        assert result.authorized is False
        assert result.status is EntryStatus.EXPIRED
        assert entries.find_by_invite_code("AB12CD34").status is EntryStatus.EXPIRED

    def test_unknown_invite_falls_through(self, gate):
        result = gate.check_authorization(email="x@y.com", invite_code="ZZZZ9999")
        assert result.authorized is False
        assert result.status is EntryStatus.REJECTED

    def test_defaults_come_from_settings(self, gate):
        result = self._invite(gate)
        assert result.max_uses == 1
        assert (result.expires_at - gate._clock()).days == 30

    def test_generated_code_shape(self, gate):
        result = gate.generate_invite_code()
        assert len(result.code) == 8
        assert result.code.isalnum() and result.code.upper() == result.code

    def test_collision_retries(self, gate, entries):
        self._invite(gate, code="AAAA1111")
        with patch("auth.authorization.random_invite_code", side_effect=["AAAA1111", "BBBB2222"]):
            result = gate.generate_invite_code()
        assert result.code == "BBBB2222"

    def test_gives_up_after_five_collisions(self, gate):
        self._invite(gate, code="AAAA1111")
        with patch("auth.authorization.random_invite_code", return_value="AAAA1111") as gen:
            result = gate.generate_invite_code()
        assert result.success is False
        assert result.code is None
        assert gen.call_count == 5


# ---------------------------------------------------------------------------
# Access requests
# ---------------------------------------------------------------------------


class TestAccessRequests:
    def test_request_is_idempotent(self, gate, entries):
        first = gate.create_access_request(email="new@x.com")
        second = gate.create_access_request(email="NEW@x.com")
        assert first.success is True
        assert second.success is False
        assert second.error == "conflict"
        assert second.entry_id == first.entry_id
        assert len(entries.list_entries(EntryStatus.PENDING)) == 1

    def test_rejected_request_is_reopened(self, gate, entries):
        entry_id = entries.create_entry(AuthorizationEntry(email="new@x.com", status=EntryStatus.REJECTED))
        result = gate.create_access_request(email="new@x.com", notes="second try")
        assert result.success is True
        assert result.entry_id == entry_id
        entry = entries.get_entry(entry_id)
        assert entry.status is EntryStatus.PENDING
        assert entry.notes == ["second try"]

    def test_email_is_the_key_when_both_given(self, gate, entries):
        result = gate.create_access_request(email="new@x.com", phone="+5511977776666")
        entry = entries.get_entry(result.entry_id)
        assert entry.email == "new@x.com"
        assert entry.phone is None
        assert "phone: +5511977776666" in entry.notes

    def test_already_authorized(self, gate, entries):
        entries.create_entry(AuthorizationEntry(email="ok@x.com"))
        result = gate.create_access_request(email="ok@x.com")
        assert result.success is False
        assert result.error == "conflict"

    def test_requires_identifier(self, gate):
        result = gate.create_access_request()
        assert result.success is False
        assert result.error == "invalid_input"


class TestDecisions:
    def test_approve_activates_and_notifies(self, gate, entries, email_backend):
        entry_id = gate.create_access_request(email="new@x.com").entry_id
        result = gate.approve_request(entry_id, approved_by="admin@corp.com")
        assert result.success is True
        entry = entries.get_entry(entry_id)
        assert entry.status is EntryStatus.ACTIVE
        assert entry.notes[-1].startswith("Approved by admin@corp.com on ")
        assert email_backend.sent[-1][0] == "new@x.com"
        assert "approved" in email_backend.sent[-1][2]
        assert gate.check_authorization(email="new@x.com").authorized is True

    def test_reject_records_reason_and_notifies_by_sms(self, gate, entries, sms_backend):
        entry_id = gate.create_access_request(phone="+5511977776666").entry_id
        result = gate.reject_request(entry_id, rejected_by="admin@corp.com", reason="Not an employee")
        assert result.success is True
        entry = entries.get_entry(entry_id)
        assert entry.status is EntryStatus.REJECTED
        assert "Reason: Not an employee" in entry.notes[-1]
        to, _subject, body = sms_backend.sent[-1]
        assert to == "+5511977776666"
        assert "Not an employee" in body

    def test_only_pending_can_be_decided(self, gate, entries):
        entry_id = entries.create_entry(AuthorizationEntry(email="ok@x.com"))
        result = gate.approve_request(entry_id, approved_by="admin")
        assert result.success is False
        assert result.error == "conflict"

    def test_missing_entry(self, gate):
        result = gate.reject_request(404, rejected_by="admin")
        assert result.success is False
        assert result.error == "not_found"

    def test_failed_notification_does_not_undo_approval(self, gate, entries, email_backend):
        email_backend.succeed = False
        entry_id = gate.create_access_request(email="new@x.com").entry_id
        result = gate.approve_request(entry_id, approved_by="admin")
        assert result.success is True
        assert "could not be notified" in result.message
        assert entries.get_entry(entry_id).status is EntryStatus.ACTIVE


# ---------------------------------------------------------------------------
# Allow-list administration
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_authorize_identity_creates_entries(self, gate, entries):
        result = gate.authorize_identity(email="Ana@Corp.com", phone="+5511988887777", created_by="admin")
        assert result.success is True
        assert entries.find_by_email("ana@corp.com", status=EntryStatus.ACTIVE).created_by == "admin"
        assert entries.find_by_phone("+5511988887777", status=EntryStatus.ACTIVE) is not None
        again = gate.authorize_identity(email="ana@corp.com", phone="+5511988887777")
        assert again.success is False
        assert again.error == "conflict"

    def test_authorize_identity_reactivates_pending(self, gate, entries):
        entry_id = gate.create_access_request(email="new@x.com").entry_id
        result = gate.authorize_identity(email="new@x.com")
        assert result.entry_id == entry_id
        assert entries.get_entry(entry_id).status is EntryStatus.ACTIVE

    def test_add_domain_normalizes(self, gate, entries):
        result = gate.add_authorized_domain("@Corp.COM ", created_by="admin")
        assert result.success is True
        assert entries.find_by_domain("corp.com", status=EntryStatus.ACTIVE) is not None
        assert gate.add_authorized_domain("corp.com").error == "conflict"

    @pytest.mark.parametrize("domain", ["", "localhost", "bob@corp.com"])
    def test_add_domain_rejects_invalid(self, gate, domain):
        result = gate.add_authorized_domain(domain)
        assert result.success is False
        assert result.error == "invalid_input"

    def test_list_and_remove(self, gate):
        gate.add_authorized_domain("corp.com")
        entry_id = gate.create_access_request(email="new@x.com").entry_id
        assert [e.value for e in gate.list_entries(EntryStatus.PENDING)] == ["new@x.com"]
        assert gate.remove_entry(entry_id) is True
        assert gate.list_entries(EntryStatus.PENDING) == []


def test_admin_phone_is_normalized(gate):
    assert gate.admin_phone == ADMIN_PHONE
    assert gate.is_admin_identity(phone=ADMIN_PHONE) is True
    assert gate.is_admin_identity(email="someone@corp.com") is False
