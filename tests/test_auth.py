from datetime import timedelta

from flask_jwt_extended import create_access_token, decode_token

from conftest import ADMIN_EMAIL


def test_register_returns_token_and_public_user(client):
    response = client.post(
        "/api/auth/register",
        json={"name": "Amina", "email": "Amina@Example.com ", "password": "milk"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["token"]
    assert body["user"]["email"] == "amina@example.com"
    assert body["user"]["isAdmin"] is False
    assert set(body["user"]) == {"id", "name", "email", "isAdmin"}


def test_register_requires_all_fields(client):
    response = client.post("/api/auth/register", json={"email": "a@example.com"})

    assert response.status_code == 400
    assert "required" in response.get_json()["message"]


def test_register_rejects_malformed_email(client):
    response = client.post(
        "/api/auth/register",
        json={"name": "A", "email": "not-an-email", "password": "secret"},
    )

    assert response.status_code == 400


def test_duplicate_registration_keeps_first_user(client, register_user, database):
    register_user(email="dup@example.com", password="first-password")

    response = client.post(
        "/api/auth/register",
        json={"name": "Other", "email": "dup@example.com", "password": "second"},
    )

    assert response.status_code == 400
    assert response.get_json() == {"message": "User already exists"}
    assert database.users.count_documents({"email": "dup@example.com"}) == 1
    login = client.post(
        "/api/auth/login",
        json={"email": "dup@example.com", "password": "first-password"},
    )
    assert login.status_code == 200
    assert login.get_json()["user"]["name"] == "Amina"


def test_password_is_stored_hashed(register_user, database):
    register_user(email="hash@example.com", password="plain-text")

    stored = database.users.find_one({"email": "hash@example.com"})
    assert bytes(stored["password"]) != b"plain-text"
    assert bytes(stored["password"]).startswith(b"$2")


def test_wrong_password_and_unknown_email_fail_identically(client, register_user):
    register_user(email="known@example.com", password="right")

    wrong_password = client.post(
        "/api/auth/login", json={"email": "known@example.com", "password": "wrong"}
    )
    unknown_email = client.post(
        "/api/auth/login", json={"email": "ghost@example.com", "password": "right"}
    )

    assert wrong_password.status_code == unknown_email.status_code == 400
    assert wrong_password.get_json() == unknown_email.get_json()
    assert wrong_password.get_json() == {"message": "Invalid credentials"}


def test_login_returns_fresh_token(client, register_user):
    register_user(email="login@example.com", password="pw")

    response = client.post(
        "/api/auth/login", json={"email": "LOGIN@example.com", "password": "pw"}
    )

    assert response.status_code == 200
    token = response.get_json()["token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.get_json()["email"] == "login@example.com"


def test_me_requires_token(client):
    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert response.get_json() == {"message": "Authentication required"}


def test_me_rejects_garbage_token(client):
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.jwt"})

    assert response.status_code == 401
    assert "message" in response.get_json()


def test_me_rejects_expired_token(app, client, customer):
    with app.app_context():
        token = create_access_token(
            identity=customer["id"], expires_delta=timedelta(seconds=-30)
        )

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_token_signed_with_other_secret_is_rejected(app_config, database, client, customer):
    from app import create_app

    other_app = create_app(
        {**app_config, "JWT_SECRET_KEY": "a-completely-different-signing-secret"},
        database=database,
    )
    with other_app.app_context():
        forged = create_access_token(identity=customer["id"])

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {forged}"})

    assert response.status_code == 401


def test_token_of_deleted_user_is_unauthenticated(client, customer, database):
    database.users.delete_many({})

    response = client.get("/api/auth/me", headers=customer["headers"])

    assert response.status_code == 401
    assert response.get_json() == {"message": "User not found"}


def test_configured_admin_email_registers_as_admin(client, admin):
    response = client.get("/api/auth/me", headers=admin["headers"])

    assert response.get_json()["isAdmin"] is True
    assert response.get_json()["email"] == ADMIN_EMAIL


def test_admin_only_route_forbids_regular_user(client, customer):
    response = client.get("/api/admin/dashboard", headers=customer["headers"])

    assert response.status_code == 403
    assert response.get_json() == {"message": "Admin access required"}


def test_issued_token_expires_seven_days_after_issuance(app, client):
    response = client.post(
        "/api/auth/register",
        json={"name": "Amina", "email": "amina@example.com", "password": "milk"},
    )

    with app.app_context():
        claims = decode_token(response.get_json()["token"])

    assert claims["exp"] - claims["iat"] == 7 * 24 * 3600
    assert claims["sub"] == response.get_json()["user"]["id"]
