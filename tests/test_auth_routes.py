"""
Tests for sign-in, organization signup and the own-profile endpoints
"""
import pytest

from conftest import PASSWORD, login
from fenstri.extensions import db
from fenstri.models import Organization, OrganizationStatus, Profile, UserRole


def _signup_payload(**overrides):
    payload = {
        "organization_name": "Gamma Fensterbau GmbH",
        "admin_name": "Greta Gamma",
        "admin_email": "greta@gamma-fenster.de",
        "admin_password": PASSWORD,
        "confirm_password": PASSWORD,
    }
    payload.update(overrides)
    return payload


@pytest.mark.integration
class TestLogin:
    """Tests for POST /auth/login"""

    def test_login_returns_session(self, client, seed):
        """Test a valid sign-in returns profile, organization and capabilities"""
        body = login(client, "dispo@alpha-hv.de").get_json()
        assert body["profile"]["role"] == "dispatcher"
        assert body["organization"]["slug"] == "alpha"
        assert "assign_technician" in body["capabilities"]

    def test_wrong_password(self, client, seed):
        """Test a bad password is refused"""
        response = client.post(
            "/auth/login",
            json={"organization_slug": "alpha", "email": "dispo@alpha-hv.de", "password": "Falsch!Passwort1"},
        )
        assert response.status_code == 403
        assert "Invalid credentials" in response.get_json()["error"]

    def test_email_from_other_org(self, client, seed):
        """Test profiles cannot sign in through another organization's slug"""
        response = client.post(
            "/auth/login",
            json={"organization_slug": "alpha", "email": "admin@beta-immo.de", "password": PASSWORD},
        )
        assert response.status_code == 403

    def test_missing_fields(self, client, seed):
        """Test missing credentials are a validation error"""
        response = client.post("/auth/login", json={"organization_slug": "alpha"})
        assert response.status_code == 422
        assert response.get_json()["field"] in {"email", "password"}

    def test_inactive_profile(self, app, client, seed):
        """Test deactivated profiles cannot sign in"""
        with app.app_context():
            db.session.get(Profile, seed.technician2_id).active = False
            db.session.commit()
        response = client.post(
            "/auth/login",
            json={"organization_slug": "alpha", "email": "tech2@alpha-hv.de", "password": PASSWORD},
        )
        assert response.status_code == 403

    def test_suspended_organization(self, app, client, seed):
        """Test members of a suspended organization cannot sign in"""
        with app.app_context():
            db.session.get(Organization, seed.beta_id).status = OrganizationStatus.SUSPENDED
            db.session.commit()
        response = client.post(
            "/auth/login",
            json={"organization_slug": "beta", "email": "admin@beta-immo.de", "password": PASSWORD},
        )
        assert response.status_code == 403
        assert "suspended" in response.get_json()["error"]


@pytest.mark.integration
class TestSession:
    """Tests for /auth/me and /auth/logout"""

    def test_me_requires_login(self, client, seed):
        """Test anonymous callers get a JSON 401"""
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert "error" in response.get_json()

    def test_me_after_login(self, login_as):
        """Test the session endpoint echoes the signed-in profile"""
        body = login_as("technician").get("/auth/me").get_json()
        assert body["profile"]["email"] == "tech@alpha-hv.de"
        assert "file_report" in body["capabilities"]

    def test_update_own_phone(self, login_as):
        """Test a partial update keeps the name and changes the phone"""
        client = login_as("customer")
        response = client.patch("/auth/me", json={"phone": "+49 30 1234"})
        assert response.status_code == 200
        profile = response.get_json()["profile"]
        assert profile["phone"] == "+49 30 1234"
        assert profile["full_name"] == "Karl Kunde"

    def test_role_cannot_be_self_assigned(self, login_as):
        """Test the own-profile endpoint ignores role changes"""
        client = login_as("customer")
        response = client.patch("/auth/me", json={"role": "admin"})
        assert response.status_code == 200
        assert response.get_json()["profile"]["role"] == "customer"

    def test_logout(self, login_as):
        """Test signing out ends the session"""
        client = login_as("dispatcher")
        assert client.post("/auth/logout").status_code == 200
        assert client.get("/auth/me").status_code == 401

    def test_deactivated_session_is_cut_off(self, app, seed, login_as):
        """Test a profile deactivated mid-session loses access"""
        client = login_as("technician2")
        with app.app_context():
            db.session.get(Profile, seed.technician2_id).active = False
            db.session.commit()
        assert client.get("/work-orders").status_code in {401, 403}


@pytest.mark.integration
class TestOrganizationSignup:
    """Tests for POST /auth/register-organization"""

    def test_signup_creates_admin(self, app, client, seed):
        """Test signup creates the organization with its first admin"""
        response = client.post("/auth/register-organization", json=_signup_payload(tax_id="DE999999999"))
        assert response.status_code == 201
        body = response.get_json()
        assert body["organization"]["slug"] == "gamma-fensterbau-gmbh"
        assert body["profile"]["role"] == "admin"
        assert client.get("/auth/me").status_code == 200
        with app.app_context():
            org = Organization.query.filter_by(slug="gamma-fensterbau-gmbh").one()
            assert org.tax_id == "DE999999999"
            assert Profile.query.filter_by(organization_id=org.id, role=UserRole.ADMIN).count() == 1

    def test_duplicate_name(self, client, seed):
        """Test organization names are unique"""
        response = client.post(
            "/auth/register-organization", json=_signup_payload(organization_name="Alpha Hausverwaltung")
        )
        assert response.status_code == 422
        assert response.get_json()["field"] == "organization_name"

    def test_duplicate_email(self, client, seed):
        """Test admin emails are unique across organizations"""
        response = client.post("/auth/register-organization", json=_signup_payload(admin_email="admin@alpha-hv.de"))
        assert response.status_code == 422
        assert response.get_json()["field"] == "admin_email"

    def test_weak_password(self, client, seed):
        """Test signup enforces the password policy"""
        response = client.post(
            "/auth/register-organization",
            json=_signup_payload(admin_password="kurz", confirm_password="kurz"),
        )
        assert response.status_code == 422
        assert response.get_json()["field"] == "admin_password"

    def test_password_mismatch(self, client, seed):
        """Test the confirmation must match"""
        response = client.post(
            "/auth/register-organization", json=_signup_payload(confirm_password="Anderes!Passwort9")
        )
        assert response.status_code == 422
        assert response.get_json()["field"] == "confirm_password"
