import pytest
from fastapi.testclient import TestClient

from wallog.config import Config
from wallog.main import create_app

_AP_HEADERS = {"Accept": "application/activity+json"}


def test_actor_document(client: TestClient) -> None:
    response = client.get("/users/alice", headers=_AP_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/activity+json")
    assert response.headers["x-request-id"]
    data = response.json()
    assert data["type"] == "Person"
    assert data["id"] == "https://example.com/users/alice"
    assert data["publicKey"]["id"] == "https://example.com/users/alice#main-key"
    assert "PRIVATE" not in response.text


def test_actor_document__ld_json(client: TestClient) -> None:
    accept = 'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
    response = client.get("/users/alice", headers={"Accept": accept})

    assert response.status_code == 200
    assert response.json()["preferredUsername"] == "alice"


def test_actor_profile_redirects_browsers(client: TestClient) -> None:
    response = client.get(
        "/users/alice", headers={"Accept": "text/html"}, follow_redirects=False
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://example.com/"


def test_unknown_actor(client: TestClient) -> None:
    response = client.get("/users/bob", headers=_AP_HEADERS)

    assert response.status_code == 404
    assert response.json() == {"error": "Unknown user bob"}


def test_followers_collection(client: TestClient) -> None:
    response = client.get("/users/alice/followers", headers=_AP_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["type"] == "Collection"
    assert data["totalItems"] == 0
    assert data["first"] == "https://example.com/users/alice/followers?page=1"

    page = client.get(data["first"], headers=_AP_HEADERS).json()
    assert page["type"] == "CollectionPage"
    assert page["partOf"] == "https://example.com/users/alice/followers"
    assert page["items"] == []
    assert "next" not in page


def test_following_collection_is_empty(client: TestClient) -> None:
    data = client.get("/users/alice/following", headers=_AP_HEADERS).json()
    assert data["totalItems"] == 0

    page = client.get(
        "/users/alice/following", params={"page": 1}, headers=_AP_HEADERS
    ).json()
    assert page["items"] == []


def test_unexpected_error_is_a_json_500(
    config: Config,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _broken_count(*args, **kwargs) -> int:
        raise RuntimeError("database is gone")

    app = create_app(config)
    monkeypatch.setattr(app.state.federation.outbox, "count", _broken_count)

    with TestClient(
        app, base_url="https://example.com", raise_server_exceptions=False
    ) as client:
        response = client.get("/users/alice/outbox", headers=_AP_HEADERS)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
