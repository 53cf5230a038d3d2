from datetime import timedelta

from sqlalchemy.exc import OperationalError

from conftest import seed_legacy_share
from schemas import ReasonCode
from security import verify_password
import models


IP = "1.2.3.4"


def make_share(evaluator, clock, password="Secret123!", **kwargs):
    return evaluator.create_share(
        owner_id="owner-1",
        expiration_date=clock() + timedelta(days=5),
        password=password,
        **kwargs,
    )


def test_brute_force_scenario(evaluator, clock):
    group = make_share(evaluator, clock)

    result = evaluator.verify_access(group.group_id, "wrong", IP)
    assert result.success is False
    assert result.reason_code is ReasonCode.INVALID_PASSWORD
    assert result.remaining_attempts == 4

    for expected_remaining in (3, 2, 1):
        result = evaluator.verify_access(group.group_id, "wrong", IP)
        assert result.remaining_attempts == expected_remaining
        assert result.is_locked is False

    result = evaluator.verify_access(group.group_id, "wrong", IP)
    assert result.success is False
    assert result.is_locked is True
    assert result.remaining_attempts == 0
    assert result.lock_expiry == clock() + timedelta(minutes=30)

    result = evaluator.verify_access(group.group_id, "Secret123!", IP)
    assert result.success is False
    assert result.reason_code is ReasonCode.LOCKED
    assert result.remaining_attempts == 0


def test_lock_is_per_requester(evaluator, clock):
    group = make_share(evaluator, clock)
    for _ in range(5):
        evaluator.verify_access(group.group_id, "wrong", IP)

    result = evaluator.verify_access(group.group_id, "Secret123!", "5.6.7.8")
    assert result.success is True


def test_lock_lapses_and_counter_restarts(evaluator, clock, db):
    group = make_share(evaluator, clock)
    for _ in range(5):
        evaluator.verify_access(group.group_id, "wrong", IP)

    clock.advance(minutes=30, seconds=1)
    result = evaluator.verify_access(group.group_id, "Secret123!", IP)
    assert result.success is True
    assert result.reason_code is ReasonCode.GRANTED
    assert db.get(models.AccessAttempt, f"{group.group_id}:{IP}") is None

    result = evaluator.verify_access(group.group_id, "wrong", IP)
    assert result.remaining_attempts == 4


def test_success_resets_partial_counter(evaluator, clock):
    group = make_share(evaluator, clock)
    evaluator.verify_access(group.group_id, "wrong", IP)
    evaluator.verify_access(group.group_id, "wrong", IP)

    result = evaluator.verify_access(group.group_id, "Secret123!", IP)
    assert result.success is True
    assert result.resource_summary.resource_id == group.group_id
    assert result.resource_summary.expiration_date == group.expiration_date

    result = evaluator.verify_access(group.group_id, "wrong", IP)
    assert result.remaining_attempts == 4


def test_password_required_reports_existing_attempts(evaluator, clock):
    group = make_share(evaluator, clock)
    result = evaluator.verify_access(group.group_id, None, IP)
    assert result.reason_code is ReasonCode.PASSWORD_REQUIRED
    assert result.remaining_attempts == 5

    evaluator.verify_access(group.group_id, "wrong", IP)
    result = evaluator.verify_access(group.group_id, "", IP)
    assert result.reason_code is ReasonCode.PASSWORD_REQUIRED
    assert result.remaining_attempts == 4


def test_unprotected_share_is_allowed_without_password(evaluator, clock, db):
    group = make_share(evaluator, clock, password=None)
    result = evaluator.verify_access(group.group_id, None, IP)
    assert result.success is True
    assert result.reason_code is ReasonCode.NOT_PROTECTED
    assert db.query(models.AccessAttempt).count() == 0


def test_resource_not_found(evaluator):
    result = evaluator.verify_access("missing", "pw", IP)
    assert result.success is False
    assert result.reason_code is ReasonCode.RESOURCE_NOT_FOUND
    assert result.remaining_attempts == 5


def test_permission_not_found(evaluator, clock, db):
    group = make_share(evaluator, clock)
    group.access_permission_id = "gone"
    db.commit()
    result = evaluator.verify_access(group.group_id, "Secret123!", IP)
    assert result.reason_code is ReasonCode.PERMISSION_NOT_FOUND


def test_expired_link_does_not_count_attempts(evaluator, clock, db):
    group = make_share(evaluator, clock)
    clock.advance(days=6)
    result = evaluator.verify_access(group.group_id, "wrong", IP)
    assert result.reason_code is ReasonCode.EXPIRED
    assert result.remaining_attempts == 5
    assert db.query(models.AccessAttempt).count() == 0


def test_ip_restriction_denies_without_consuming_attempts(evaluator, clock, db):
    group = make_share(evaluator, clock, ip_enabled=True, ip_rules=["192.168.1.0/24"])

    result = evaluator.verify_access(group.group_id, "Secret123!", "10.0.0.1")
    assert result.reason_code is ReasonCode.IP_NOT_ALLOWED
    assert result.remaining_attempts == 5
    assert db.query(models.AccessAttempt).count() == 0

    result = evaluator.verify_access(group.group_id, "Secret123!", "192.168.1.42")
    assert result.success is True


def test_ip_restriction_load_failure_fails_open(evaluator, clock, store, monkeypatch):
    group = make_share(evaluator, clock, ip_enabled=True, ip_rules=["192.168.1.0/24"])

    def unavailable(permission_id):
        raise OperationalError("SELECT", {}, Exception("connection lost"))

    monkeypatch.setattr(store, "get_ip_restriction", unavailable)
    result = evaluator.verify_access(group.group_id, "Secret123!", "10.0.0.1")
    assert result.success is True


def test_disabled_ip_restriction_allows_everyone(evaluator, clock):
    group = make_share(evaluator, clock)
    evaluator.update_ip_restriction(group.access_permission_id, False, ["192.168.1.0/24"])
    result = evaluator.verify_access(group.group_id, "Secret123!", "10.0.0.1")
    assert result.success is True


def test_legacy_hash_is_upgraded_on_success(evaluator, clock, db):
    group_id, permission_id = seed_legacy_share(db, clock, "secret")

    result = evaluator.verify_access(group_id, "secret", IP)
    assert result.success is True

    permission = db.get(models.AccessPermission, permission_id, populate_existing=True)
    assert permission.password_salt
    assert verify_password("secret", permission.password_hash, permission.password_salt)

    result = evaluator.verify_access(group_id, "secret", IP)
    assert result.success is True
    assert evaluator.verify_access(group_id, "c2VjcmV0", IP).success is False


def test_legacy_wrong_password_counts_as_failure(evaluator, clock, db):
    group_id, _ = seed_legacy_share(db, clock, "secret")
    result = evaluator.verify_access(group_id, "nope", IP)
    assert result.reason_code is ReasonCode.INVALID_PASSWORD
    assert result.remaining_attempts == 4


def test_legacy_upgrade_failure_keeps_grant(evaluator, clock, db, store, monkeypatch):
    group_id, permission_id = seed_legacy_share(db, clock, "secret")

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("throttled"))

    monkeypatch.setattr(store, "set_password_hash", broken)
    result = evaluator.verify_access(group_id, "secret", IP)
    assert result.success is True
    assert db.get(models.AccessPermission, permission_id).password_salt is None


def test_every_outcome_is_logged(evaluator, clock, db):
    group = make_share(evaluator, clock)
    evaluator.verify_access(group.group_id, "wrong", IP)
    clock.advance(seconds=1)
    evaluator.verify_access(group.group_id, "Secret123!", IP)
    clock.advance(seconds=1)
    evaluator.verify_access("missing", "x", IP)

    logs = db.query(models.AccessLog).order_by(models.AccessLog.timestamp).all()
    assert len(logs) == 3
    assert {log.action for log in logs} == {"verify"}
    assert all(log.ip_address == "1.2.3.xxx" for log in logs)
    assert [log.meta_data["reasonCode"] for log in logs if log.group_id == group.group_id] == [
        "invalid_password",
        "granted",
    ]


def test_log_outage_does_not_change_decision(evaluator, clock, store, monkeypatch):
    group = make_share(evaluator, clock)

    def down(entry):
        raise OperationalError("INSERT", {}, Exception("log table down"))

    monkeypatch.setattr(store, "add_log", down)
    assert evaluator.verify_access(group.group_id, "Secret123!", IP).success is True
    assert evaluator.verify_access(group.group_id, "wrong", IP).remaining_attempts == 4


def test_update_ip_restriction_normalizes(evaluator, clock, db):
    group = make_share(evaluator, clock)
    result = evaluator.update_ip_restriction(
        group.access_permission_id,
        True,
        ["10.0.0.1", "10.0.0.1", "not-an-ip", "192.168.*.*", "10.0.0.0/40", None],
    )
    assert result["success"] is True
    assert result["normalized_rules"] == ["10.0.0.1", "192.168.*.*"]

    restriction = db.get(models.IpRestriction, group.access_permission_id)
    assert restriction.enabled is True
    assert restriction.allowed_ips == ["10.0.0.1", "192.168.*.*"]

    evaluator.update_ip_restriction(group.access_permission_id, "yes", [])
    restriction = db.get(models.IpRestriction, group.access_permission_id, populate_existing=True)
    assert restriction.enabled is False
    assert restriction.allowed_ips == []


def test_create_share_and_update_expiration(evaluator, clock, db):
    group = make_share(evaluator, clock, allowed_emails=["a@example.com"])
    permission = db.get(models.AccessPermission, group.access_permission_id)
    assert group.is_password_protected is True
    assert permission.password_salt
    assert permission.allowed_emails == ["a@example.com"]

    new_expiration = clock() + timedelta(days=30)
    evaluator.update_expiration(group.group_id, new_expiration)
    permission = db.get(models.AccessPermission, group.access_permission_id, populate_existing=True)
    assert permission.expiration_date == new_expiration
    assert evaluator.update_expiration("missing", new_expiration) is None
