import pytest
from fastapi.testclient import TestClient

from wallog.errors import MalformedRequestError
from wallog.webfinger import parse_acct_resource


def test_parse_acct_resource() -> None:
    assert parse_acct_resource("acct:alice@Example.com") == ("alice", "example.com")

    for resource in [None, "", "alice@example.com", "acct:alice", "acct:a@b@c"]:
        with pytest.raises(MalformedRequestError):
            parse_acct_resource(resource)


def test_webfinger(client: TestClient) -> None:
    response = client.get(
        "/.well-known/webfinger", params={"resource": "acct:alice@example.com"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/jrd+json")
    data = response.json()
    assert data["subject"] == "acct:alice@example.com"
    assert {
        "rel": "self",
        "type": "application/activity+json",
        "href": "https://example.com/users/alice",
    } in data["links"]


def test_webfinger__actor_url_as_resource(client: TestClient) -> None:
    response = client.get(
        "/.well-known/webfinger",
        params={"resource": "https://example.com/users/alice"},
    )

    assert response.status_code == 200
    assert response.json()["subject"] == "acct:alice@example.com"


def test_webfinger__foreign_domain(client: TestClient) -> None:
    response = client.get(
        "/.well-known/webfinger", params={"resource": "acct:alice@other.example"}
    )

    assert response.status_code == 404


def test_webfinger__unknown_user(client: TestClient) -> None:
    response = client.get(
        "/.well-known/webfinger", params={"resource": "acct:bob@example.com"}
    )

    assert response.status_code == 404


def test_webfinger__malformed_resource(client: TestClient) -> None:
    response = client.get("/.well-known/webfinger", params={"resource": "alice"})
    assert response.status_code == 400

    response = client.get("/.well-known/webfinger")
    assert response.status_code == 400


def test_nodeinfo(client: TestClient) -> None:
    response = client.get("/.well-known/nodeinfo")
    assert response.status_code == 200
    links = response.json()["links"]
    assert links[0]["href"] == "https://example.com/nodeinfo/2.0"

    response = client.get("/nodeinfo/2.1")
    assert response.status_code == 200
    data = response.json()
    assert data["software"]["name"] == "wallog"
    assert data["protocols"] == ["activitypub"]
    assert data["usage"]["users"]["total"] == 1
    assert data["usage"]["localPosts"] == 0

    assert client.get("/nodeinfo/1.0").status_code == 404
