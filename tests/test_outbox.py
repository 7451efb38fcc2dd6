from unittest import mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from wallog import models
from wallog.config import Config
from wallog.database import AsyncSession
from wallog.errors import NotFoundError
from wallog.events import ContentDeleted
from wallog.events import ContentPublished
from wallog.events import EventBus
from wallog.federation import Federation
from wallog.main import create_app

_AP_HEADERS = {"Accept": "application/activity+json"}


@pytest.mark.asyncio
async def test_event_bus_unsubscribe() -> None:
    bus = EventBus()
    received = []

    async def _handler(event: ContentPublished) -> None:
        received.append(event.local_post_id)

    unsubscribe = bus.subscribe(ContentPublished, _handler)
    await bus.publish(ContentPublished(local_post_id="1", content="a"))
    # Other event types are not routed to the handler
    await bus.publish(ContentDeleted(local_post_id="1"))

    unsubscribe()
    unsubscribe()
    await bus.publish(ContentPublished(local_post_id="2", content="b"))

    assert received == ["1"]


@pytest.mark.asyncio
async def test_content_published_is_announced(
    federation: Federation,
    db_session: AsyncSession,
    local_actor: models.Actor,
) -> None:
    # When publishing a post
    with mock.patch.object(
        federation.delivery, "deliver_to_followers", new_callable=mock.AsyncMock
    ) as deliver_to_followers:
        await federation.events.publish(
            ContentPublished(
                local_post_id="post-1",
                content="<p>Hello</p>",
                title="Hello",
                tags=["python", "#fediverse"],
            )
        )
        await federation.delivery.drain()

    # Then a single Create was added to the outbox
    create = (
        await db_session.scalars(
            select(models.Activity).where(models.Activity.ap_type == "Create")
        )
    ).one()
    assert create.local_post_id == "post-1"
    note = create.ap_object["object"]
    assert note["content"] == "<p>Hello</p>"
    assert note["name"] == "Hello"
    assert [tag["name"] for tag in note["tag"]] == ["#python", "#fediverse"]
    assert note["cc"] == [local_actor.followers_url]

    # And it was sent to the followers once
    deliver_to_followers.assert_awaited_once()
    assert deliver_to_followers.await_args.args[0]["id"] == create.ap_id


@pytest.mark.asyncio
async def test_content_deleted(
    federation: Federation,
    db_session: AsyncSession,
) -> None:
    with mock.patch.object(
        federation.delivery, "deliver_to_followers", new_callable=mock.AsyncMock
    ) as deliver_to_followers:
        await federation.events.publish(
            ContentPublished(local_post_id="post-1", content="Hello")
        )
        create = await federation.outbox.get_create_for_local_post(
            db_session, "post-1"
        )
        assert create is not None

        # When deleting the post twice
        await federation.events.publish(ContentDeleted(local_post_id="post-1"))
        await federation.events.publish(ContentDeleted(local_post_id="post-1"))
        await federation.delivery.drain()

    # Then the object is gone and a single Delete was sent
    published = await federation.outbox.get_object(
        db_session, create.activity_object_ap_id
    )
    assert published is not None
    assert published[1] is True
    assert deliver_to_followers.await_count == 2
    assert deliver_to_followers.await_args.args[0]["type"] == "Delete"


@pytest.mark.asyncio
async def test_content_deleted__never_published(federation: Federation) -> None:
    with pytest.raises(NotFoundError):
        await federation.events.publish(ContentDeleted(local_post_id="unknown"))


def test_objects_and_tombstones(client: TestClient) -> None:
    federation = client.app.state.federation  # type: ignore
    client.portal.call(  # type: ignore
        federation.events.publish,
        ContentPublished(local_post_id="post-1", content="Hello"),
    )

    outbox = client.get("/users/alice/outbox?page=1", headers=_AP_HEADERS).json()
    create = outbox["orderedItems"][0]
    object_path = create["object"]["id"].removeprefix("https://example.com")
    activity_path = create["id"].removeprefix("https://example.com")

    response = client.get(object_path, headers=_AP_HEADERS)
    assert response.status_code == 200
    assert response.json()["content"] == "Hello"
    assert client.get(activity_path).json()["type"] == "Create"

    client.portal.call(  # type: ignore
        federation.events.publish, ContentDeleted(local_post_id="post-1")
    )

    response = client.get(object_path, headers=_AP_HEADERS)
    assert response.status_code == 410
    assert response.json()["type"] == "Tombstone"

    assert client.get("/objects/unknown").status_code == 404
    assert client.get("/activities/unknown").status_code == 404


def test_outbox_pagination(config: Config) -> None:
    config = config.model_copy(update={"outbox_page_size": 2})

    with TestClient(create_app(config), base_url="https://example.com") as client:
        federation = client.app.state.federation  # type: ignore
        for i in range(3):
            client.portal.call(  # type: ignore
                federation.events.publish,
                ContentPublished(local_post_id=f"post-{i}", content=f"Post {i}"),
            )

        collection = client.get("/users/alice/outbox", headers=_AP_HEADERS).json()
        assert collection["type"] == "OrderedCollection"
        assert collection["totalItems"] == 3
        assert collection["first"].endswith("/outbox?page=1")
        assert collection["last"].endswith("/outbox?page=2")

        first_page = client.get(collection["first"], headers=_AP_HEADERS).json()
        assert len(first_page["orderedItems"]) == 2
        assert first_page["next"].endswith("?page=2")
        assert "prev" not in first_page

        last_page = client.get(collection["last"], headers=_AP_HEADERS).json()
        assert [a["object"]["content"] for a in last_page["orderedItems"]] == [
            "Post 0"
        ]
        assert last_page["prev"].endswith("?page=1")

        assert client.get("/users/alice/outbox?page=0").status_code == 422
