"""Integration tests for the login flows.

Covers:
- Super admin email and phone OTP login
- District admin login
- Password reset
- Complainant OTP login
- Token refresh and logout
"""

import pytest
from fastapi.testclient import TestClient

from caldost import app as app_module
from caldost.service.runtime import get_runtime

SUPER_EMAIL = "root@example.org"
SUPER_PHONE = "9876500001"
SUPER_PASSWORD = "Sup3rSecret!"
ADMIN_EMAIL = "ranchi.admin@example.org"
ADMIN_PASSWORD = "Ranch1Pass!"


@pytest.fixture
def client(fixed_otp):
    with TestClient(app_module.app) as client:
        yield client


@pytest.fixture
def super_admin(client):
    return get_runtime().accounts.create_super_admin(
        name="State Cell", email=SUPER_EMAIL, password=SUPER_PASSWORD, phone_number=SUPER_PHONE
    )


@pytest.fixture
def district_admin(client, super_admin):
    accounts = get_runtime().accounts
    accounts.create_district("RAN", "Ranchi")
    return accounts.create_admin(
        name="Ranchi Officer",
        email=ADMIN_EMAIL,
        district_code_alpha="RAN",
        password=ADMIN_PASSWORD,
        created_by=super_admin.public_user_id,
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _super_admin_login(client, otp):
    client.post(
        "/v1/auth/super-admin/login/email-otp/request",
        json={"email": SUPER_EMAIL, "password": SUPER_PASSWORD},
    )
    response = client.post(
        "/v1/auth/super-admin/login/email-otp/verify",
        json={"email": SUPER_EMAIL, "otp": otp},
    )
    assert response.status_code == 200
    return response.json()["data"]


class TestSuperAdminLogin:
    """Password then emailed OTP."""

    def test_email_otp_login(self, client, super_admin, fixed_otp):
        response = client.post(
            "/v1/auth/super-admin/login/email-otp/request",
            json={"email": SUPER_EMAIL, "password": SUPER_PASSWORD},
        )
        assert response.status_code == 200
        assert response.json()["data"]["otp_expires_in_seconds"] == 300

        response = client.post(
            "/v1/auth/super-admin/login/email-otp/verify",
            json={"email": SUPER_EMAIL, "otp": fixed_otp},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["role"] == "SUPER_ADMIN"
        assert data["accessToken"] and data["refreshToken"]
        set_cookie = response.headers.get("set-cookie", "")
        assert "access_token=" in set_cookie
        assert "HttpOnly" in set_cookie

        me = client.get("/v1/me", headers=_bearer(data["accessToken"]))
        assert me.status_code == 200
        assert me.json()["data"]["role"] == "SUPER_ADMIN"

    def test_wrong_password_rejected(self, client, super_admin):
        response = client.post(
            "/v1/auth/super-admin/login/email-otp/request",
            json={"email": SUPER_EMAIL, "password": "wrong-password"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid email or password"

    def test_wrong_otp_then_reuse(self, client, super_admin, fixed_otp):
        client.post(
            "/v1/auth/super-admin/login/email-otp/request",
            json={"email": SUPER_EMAIL, "password": SUPER_PASSWORD},
        )
        wrong = client.post(
            "/v1/auth/super-admin/login/email-otp/verify",
            json={"email": SUPER_EMAIL, "otp": "000000"},
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid OTP"

        ok = client.post(
            "/v1/auth/super-admin/login/email-otp/verify",
            json={"email": SUPER_EMAIL, "otp": fixed_otp},
        )
        assert ok.status_code == 200

        reused = client.post(
            "/v1/auth/super-admin/login/email-otp/verify",
            json={"email": SUPER_EMAIL, "otp": fixed_otp},
        )
        assert reused.status_code == 401
        assert reused.json()["error"]["message"] == "OTP expired or not requested"

    def test_phone_otp_login(self, client, super_admin, fixed_otp):
        response = client.post(
            "/v1/auth/super-admin/login/phone-otp/request", json={"phone_number": SUPER_PHONE}
        )
        assert response.status_code == 200
        response = client.post(
            "/v1/auth/super-admin/login/phone-otp/verify",
            json={"phone_number": SUPER_PHONE, "otp": fixed_otp},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["public_user_id"] == super_admin.public_user_id

    def test_unknown_phone_not_found(self, client, super_admin):
        response = client.post(
            "/v1/auth/super-admin/login/phone-otp/request", json={"phone_number": "9000000000"}
        )
        assert response.status_code == 404

    def test_malformed_email_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/super-admin/login/email-otp/request",
            json={"email": "not-an-email", "password": "x"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSessionLifecycle:
    """Logout revokes tokens; refresh works only while the session lives."""

    def test_logout_revokes_access_token(self, client, super_admin, fixed_otp):
        data = _super_admin_login(client, fixed_otp)
        headers = _bearer(data["accessToken"])
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200

        after = client.get("/v1/me", headers=headers)
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "unauthorized"

        refreshed = client.post(
            "/v1/auth/refresh", json={"refresh_token": data["refreshToken"]}
        )
        assert refreshed.status_code == 401

    def test_refresh_mints_working_access_token(self, client, super_admin, fixed_otp):
        data = _super_admin_login(client, fixed_otp)
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refreshToken"]})
        assert response.status_code == 200
        new_token = response.json()["data"]["accessToken"]
        assert client.get("/v1/me", headers=_bearer(new_token)).status_code == 200

    def test_access_token_cannot_refresh(self, client, super_admin, fixed_otp):
        data = _super_admin_login(client, fixed_otp)
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["accessToken"]})
        assert response.status_code == 401

    def test_missing_token_is_unauthorized(self, client):
        assert client.get("/v1/me").status_code == 401

    def test_relogin_keeps_single_session(self, client, super_admin, fixed_otp):
        first = _super_admin_login(client, fixed_otp)
        second = _super_admin_login(client, fixed_otp)
        # Same principal, one session record: both tokens stay valid until logout
        assert client.get("/v1/me", headers=_bearer(first["accessToken"])).status_code == 200
        client.post("/v1/auth/logout", headers=_bearer(second["accessToken"]))
        assert client.get("/v1/me", headers=_bearer(first["accessToken"])).status_code == 401


class TestDistrictAdminLogin:
    def test_admin_login_carries_district(self, client, district_admin, fixed_otp):
        response = client.post(
            "/v1/auth/admin/login/request",
            json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD},
        )
        assert response.status_code == 200
        response = client.post(
            "/v1/auth/admin/login/verify", json={"email": ADMIN_EMAIL, "otp": fixed_otp}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["district_code_alpha"] == "RAN"

        me = client.get("/v1/me", headers=_bearer(data["accessToken"]))
        assert me.json()["data"]["district"] == "RAN"

        forbidden = client.get("/v1/admins", headers=_bearer(data["accessToken"]))
        assert forbidden.status_code == 403

    def test_super_admin_cannot_use_admin_login(self, client, super_admin):
        response = client.post(
            "/v1/auth/admin/login/request",
            json={"email": SUPER_EMAIL, "password": SUPER_PASSWORD},
        )
        assert response.status_code == 401


class TestPasswordReset:
    def test_unknown_email_gets_same_answer(self, client, district_admin):
        known = client.post("/v1/auth/forgot-password/request", json={"email": ADMIN_EMAIL})
        unknown = client.post(
            "/v1/auth/forgot-password/request", json={"email": "nobody@example.org"}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == unknown.json()["data"]["message"]

    def test_reset_changes_password_and_ends_session(self, client, district_admin, fixed_otp):
        client.post(
            "/v1/auth/admin/login/request",
            json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD},
        )
        login = client.post(
            "/v1/auth/admin/login/verify", json={"email": ADMIN_EMAIL, "otp": fixed_otp}
        ).json()["data"]

        client.post("/v1/auth/forgot-password/request", json={"email": ADMIN_EMAIL})
        response = client.post(
            "/v1/auth/forgot-password/verify",
            json={"email": ADMIN_EMAIL, "otp": fixed_otp, "new_password": "Brand-New-9"},
        )
        assert response.status_code == 200

        assert client.get("/v1/me", headers=_bearer(login["accessToken"])).status_code == 401
        old = client.post(
            "/v1/auth/admin/login/request",
            json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD},
        )
        assert old.status_code == 401
        new = client.post(
            "/v1/auth/admin/login/request",
            json={"email": ADMIN_EMAIL, "password": "Brand-New-9"},
        )
        assert new.status_code == 200

    def test_short_password_rejected(self, client, district_admin, fixed_otp):
        client.post("/v1/auth/forgot-password/request", json={"email": ADMIN_EMAIL})
        response = client.post(
            "/v1/auth/forgot-password/verify",
            json={"email": ADMIN_EMAIL, "otp": fixed_otp, "new_password": "short"},
        )
        assert response.status_code == 400


class TestComplainantLogin:
    """Complainants log in with the phone or email they filed with."""

    def _file_complaint(self, client, super_admin):
        _, raw_key = get_runtime().accounts.create_api_key("intake", super_admin.public_user_id)
        response = client.post(
            "/v1/health/complaints",
            headers={"X-API-Key": raw_key},
            json={
                "district": "Ranchi",
                "complaint_title": "Ambulance delayed",
                "complaint_description": "Waited four hours",
                "complainant_name": "Ravi",
                "complainant_phone": "9876543210",
                "complainant_email": "ravi@example.org",
            },
        )
        assert response.status_code == 201
        return response.json()["data"]["complaint_number"]

    def test_phone_login_lists_own_complaints(self, client, super_admin, fixed_otp):
        number = self._file_complaint(client, super_admin)
        response = client.post(
            "/v1/auth/complainant/phone-otp/request", json={"phone_number": "9876543210"}
        )
        assert response.status_code == 200
        response = client.post(
            "/v1/auth/complainant/phone-otp/verify",
            json={"phone_number": "9876543210", "otp": fixed_otp},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["complaint_types"] == ["HEALTH"]

        mine = client.get("/v1/complainant/complaints", headers=_bearer(data["accessToken"]))
        assert mine.status_code == 200
        assert [c["complaint_number"] for c in mine.json()["data"]["items"]] == [number]

        admin_only = client.get("/v1/admin/health/complaints", headers=_bearer(data["accessToken"]))
        assert admin_only.status_code == 403

    def test_email_login(self, client, super_admin, fixed_otp):
        self._file_complaint(client, super_admin)
        assert (
            client.post(
                "/v1/auth/complainant/email-otp/request", json={"email": "Ravi@Example.org"}
            ).status_code
            == 200
        )
        response = client.post(
            "/v1/auth/complainant/email-otp/verify",
            json={"email": "ravi@example.org", "otp": fixed_otp},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "COMPLAINANT"

    def test_phone_without_complaints_not_found(self, client):
        response = client.post(
            "/v1/auth/complainant/phone-otp/request", json={"phone_number": "9000000000"}
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "No complaint found with this phone number"
