"""Bearer token authentication on the orders API."""

import pytest

LIST_URL = "/api/orders/"
DETAIL_URL = "/api/orders/{oid}/"
STATUS_URL = "/api/orders/{oid}/status/"


def create(client, headers, address):
    r = client.post(
        LIST_URL,
        data={"items": [{"product_id": 1, "quantity": 1}], "shipping_address": address},
        content_type="application/json",
        **headers,
    )
    assert r.status_code == 201
    return r.json()["id"]


@pytest.mark.django_db
def test_valid_token_identifies_the_caller(client, token_headers):
    r = client.get(LIST_URL, **token_headers({"id": 42, "role": "user"}))
    assert r.status_code == 200


@pytest.mark.django_db
def test_user_id_claim_and_default_role(client, token_headers, address):
    headers = token_headers({"userId": 42})
    oid = create(client, headers, address)
    r = client.get(DETAIL_URL.format(oid=oid), **headers)
    assert r.status_code == 200
    assert r.json()["user_id"] == 42
    # no role claim means a plain user
    r = client.patch(STATUS_URL.format(oid=oid), data={"status": "processing"}, content_type="application/json", **headers)
    assert r.status_code == 403


@pytest.mark.django_db
def test_missing_token_is_401(client):
    r = client.get(LIST_URL)
    assert r.status_code == 401
    assert r.headers["WWW-Authenticate"].startswith("Bearer")


@pytest.mark.django_db
def test_identity_headers_without_token_are_ignored(client, user_headers, address):
    oid = create(client, user_headers, address)
    spoofed = {"HTTP_X_USER_ID": "999", "HTTP_X_USER_ROLE": "admin"}

    assert client.get(DETAIL_URL.format(oid=oid), **spoofed).status_code == 401
    r = client.patch(STATUS_URL.format(oid=oid), data={"status": "processing"}, content_type="application/json", **spoofed)
    assert r.status_code == 401
    assert client.get(DETAIL_URL.format(oid=oid), **user_headers).json()["status"] == "paid"


@pytest.mark.django_db
def test_wrong_signature_is_401(client, token_headers):
    r = client.get(LIST_URL, **token_headers({"id": 1, "role": "admin"}, secret="not-the-shared-secret-at-all-0123"))
    assert r.status_code == 401


@pytest.mark.django_db
def test_expired_token_is_401(client, token_headers):
    r = client.get(LIST_URL, **token_headers({"id": 42}, expires_in=-60))
    assert r.status_code == 401


@pytest.mark.django_db
@pytest.mark.parametrize(
    "authorization",
    ["Bearer", "Bearer not.a.jwt", "Bearer a b"],
)
def test_malformed_authorization_is_401(client, authorization):
    assert client.get(LIST_URL, HTTP_AUTHORIZATION=authorization).status_code == 401


@pytest.mark.django_db
@pytest.mark.parametrize(
    "claims",
    [{"role": "user"}, {"id": "abc"}, {"id": 0}, {"id": 5, "role": "root"}],
)
def test_unusable_claims_are_401(client, token_headers, claims):
    assert client.get(LIST_URL, **token_headers(claims)).status_code == 401
