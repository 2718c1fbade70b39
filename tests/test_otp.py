from datetime import timedelta

import pytest

import otp
from database import utcnow
from errors import InvalidCode, OtpAlreadyUsed, OtpExpired, OtpNotFound, TooManyAttempts


def test_issue_code_is_six_digits():
    record = otp.issue_code("Someone@Example.com")
    assert record["email"] == "someone@example.com"
    assert len(record["code"]) == 6 and record["code"].isdigit()
    assert record["attempts"] == 0
    assert record["used"] is False


def test_reissuing_replaces_unused_code(db):
    first = otp.issue_code("a@example.com")
    second = otp.issue_code("a@example.com")
    unused = list(db["otp"].find({"email": "a@example.com", "used": False}))
    assert len(unused) == 1
    assert unused[0]["_id"] == second["_id"]
    assert db["otp"].find_one({"_id": first["_id"]}) is None


def test_verify_consumes_code():
    record = otp.issue_code("a@example.com")
    consumed = otp.verify_code("a@example.com", record["code"])
    assert consumed["used"] is True
    with pytest.raises(OtpAlreadyUsed):
        otp.verify_code("a@example.com", record["code"])


def test_unknown_email_has_no_code():
    with pytest.raises(OtpNotFound):
        otp.verify_code("nobody@example.com", "123456")


def test_wrong_code_counts_attempts(db):
    record = otp.issue_code("a@example.com")
    wrong = "000000" if record["code"] != "000000" else "111111"
    with pytest.raises(InvalidCode):
        otp.verify_code("a@example.com", wrong)
    stored = db["otp"].find_one({"_id": record["_id"]})
    assert stored["attempts"] == 1
    assert stored["used"] is False


def test_three_mismatches_lock_the_code():
    record = otp.issue_code("a@example.com")
    wrong = "000000" if record["code"] != "000000" else "111111"
    for _ in range(3):
        with pytest.raises(InvalidCode):
            otp.verify_code("a@example.com", wrong)
    with pytest.raises(TooManyAttempts):
        otp.verify_code("a@example.com", record["code"])


def test_expired_code_is_rejected():
    issued_at = utcnow() - timedelta(minutes=11)
    record = otp.issue_code("a@example.com", now=issued_at)
    with pytest.raises(OtpExpired):
        otp.verify_code("a@example.com", record["code"])


def test_code_valid_until_expiry():
    issued_at = utcnow()
    record = otp.issue_code("a@example.com", now=issued_at)
    consumed = otp.verify_code("a@example.com", record["code"], now=issued_at + timedelta(minutes=10))
    assert consumed["used"] is True


def test_non_ascii_code_is_a_mismatch(db):
    record = otp.issue_code("a@example.com")
    with pytest.raises(InvalidCode):
        otp.verify_code("a@example.com", "12345é")
    assert db["otp"].find_one({"_id": record["_id"]})["attempts"] == 1
