import asyncio
from datetime import timedelta

import httpx
import pytest
import respx
from sqlalchemy import func
from sqlalchemy import select

from tests import factories
from tests.utils import setup_remote_actor
from wallog import models
from wallog.actor import build_actor_document
from wallog.config import Config
from wallog.database import AsyncSession
from wallog.errors import InvalidActorError
from wallog.errors import NotFoundError
from wallog.errors import UnreachableActorError
from wallog.federation import Federation
from wallog.utils.datetime import now


@pytest.mark.asyncio
async def test_default_actor_bootstrap_is_idempotent(
    federation: Federation,
    db_session: AsyncSession,
    local_actor: models.Actor,
) -> None:
    # When bootstrapping the default actor again
    actor = await federation.directory.create_default_actor_if_absent(db_session)

    # Then the existing actor and key are kept
    assert actor.id == local_actor.id
    assert actor.public_key_pem == local_actor.public_key_pem
    assert (
        await db_session.scalar(select(func.count(models.Actor.id)))
    ) == 1
    assert (await db_session.scalar(select(func.count(models.Key.id)))) == 1


@pytest.mark.asyncio
async def test_concurrent_bootstrap_creates_a_single_actor(
    federation: Federation,
) -> None:
    async def _bootstrap() -> models.Actor:
        async with federation.database.session() as db_session:
            return await federation.directory.create_default_actor_if_absent(
                db_session, username="carol"
            )

    actors = await asyncio.gather(_bootstrap(), _bootstrap())

    assert actors[0].id == actors[1].id
    async with federation.database.session() as db_session:
        assert (
            await db_session.scalar(
                select(func.count(models.Key.id)).where(
                    models.Key.actor_id == actors[0].id
                )
            )
        ) == 1


@pytest.mark.asyncio
async def test_local_actor_document(
    config: Config,
    local_actor: models.Actor,
) -> None:
    doc = build_actor_document(config, local_actor)

    assert doc["id"] == "https://example.com/users/alice"
    assert doc["preferredUsername"] == "alice"
    assert doc["inbox"] == "https://example.com/users/alice/inbox"
    assert doc["endpoints"]["sharedInbox"] == "https://example.com/inbox"
    assert doc["publicKey"] == {
        "id": "https://example.com/users/alice#main-key",
        "owner": "https://example.com/users/alice",
        "publicKeyPem": local_actor.public_key_pem,
    }
    assert "privateKeyPem" not in str(doc)


@pytest.mark.asyncio
async def test_get_local_actor__unknown_user(
    federation: Federation,
    db_session: AsyncSession,
) -> None:
    with pytest.raises(NotFoundError):
        await federation.directory.get_local_actor(db_session, "nobody")


@pytest.mark.asyncio
async def test_resolve_remote_actor__cached(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a remote actor
    ra = setup_remote_actor(respx_mock)

    # When resolving it for the first time
    actor = await federation.directory.resolve_remote_actor(db_session, ra.ap_id)

    # Then it has been fetched and saved in DB with its key
    assert actor.ap_id == ra.ap_id
    assert actor.is_local is False
    assert actor.inbox_url == ra.inbox_url
    assert respx_mock.calls.call_count == 1
    keys = await federation.directory.get_verification_keys(
        db_session, ra.public_key_id
    )
    assert [key.public_key_pem for key in keys] == [ra.public_key_as_pem]

    # When resolving it a second time
    actor = await federation.directory.resolve_remote_actor(db_session, ra.ap_id)

    # Then it's read from the DB
    assert actor.ap_id == ra.ap_id
    assert respx_mock.calls.call_count == 1


@pytest.mark.asyncio
async def test_resolve_remote_actor__single_flight(
    federation: Federation,
    respx_mock: respx.MockRouter,
) -> None:
    ra = factories.RemoteActorFactory()

    async def _slow_actor(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        return httpx.Response(200, json=ra.ap_actor)

    respx_mock.get(ra.ap_id).mock(side_effect=_slow_actor)

    async def _resolve() -> models.Actor:
        async with federation.database.session() as db_session:
            return await federation.directory.resolve_remote_actor(
                db_session, ra.ap_id
            )

    actors = await asyncio.gather(*[_resolve() for _ in range(5)])

    assert {actor.ap_id for actor in actors} == {ra.ap_id}
    assert respx_mock.calls.call_count == 1


@pytest.mark.asyncio
async def test_resolve_remote_actor__unreachable(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    ra = factories.RemoteActorFactory()
    respx_mock.get(ra.ap_id).mock(return_value=httpx.Response(500))

    with pytest.raises(UnreachableActorError):
        await federation.directory.resolve_remote_actor(db_session, ra.ap_id)


@pytest.mark.asyncio
async def test_resolve_remote_actor__stale_cache_is_used_when_unreachable(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a remote actor resolved a long time ago
    ra = factories.RemoteActorFactory()
    respx_mock.get(ra.ap_id).mock(
        side_effect=[
            httpx.Response(200, json=ra.ap_actor),
            httpx.Response(503),
        ]
    )
    actor = await federation.directory.resolve_remote_actor(db_session, ra.ap_id)
    actor.fetched_at = now() - timedelta(days=7)
    await db_session.commit()

    # When its server is down
    cached_actor = await federation.directory.resolve_remote_actor(
        db_session, ra.ap_id
    )

    # Then the cached copy is returned
    assert cached_actor.id == actor.id
    assert respx_mock.calls.call_count == 2


@pytest.mark.asyncio
async def test_resolve_remote_actor__invalid_document(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    ra = factories.RemoteActorFactory()
    ap_actor = dict(ra.ap_actor)
    del ap_actor["publicKey"]
    respx_mock.get(ra.ap_id).mock(return_value=httpx.Response(200, json=ap_actor))

    with pytest.raises(InvalidActorError):
        await federation.directory.resolve_remote_actor(db_session, ra.ap_id)


@pytest.mark.asyncio
async def test_resolve_remote_actor__document_from_another_server(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a server returning the document of an actor it does not host
    ra = factories.RemoteActorFactory()
    uri = "https://evil.example/users/bob"
    respx_mock.get(uri).mock(return_value=httpx.Response(200, json=ra.ap_actor))

    with pytest.raises(InvalidActorError):
        await federation.directory.resolve_remote_actor(db_session, uri)


@pytest.mark.asyncio
async def test_resolve_by_handle__webfinger(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    ra = setup_remote_actor(respx_mock)
    respx_mock.get("https://remote.example/.well-known/webfinger").mock(
        return_value=httpx.Response(
            200,
            json={
                "subject": "acct:bob@remote.example",
                "links": [
                    {
                        "rel": "self",
                        "type": "application/activity+json",
                        "href": ra.ap_id,
                    }
                ],
            },
        )
    )

    actor = await federation.directory.resolve_by_handle(
        db_session, "bob", "remote.example"
    )

    assert actor.ap_id == ra.ap_id
    assert actor.handle == "@bob@remote.example"


@pytest.mark.asyncio
async def test_resolve_by_handle__falls_back_to_well_known_urls(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a server without webfinger
    ra = setup_remote_actor(respx_mock)
    respx_mock.get("https://remote.example/.well-known/webfinger").mock(
        return_value=httpx.Response(404)
    )

    actor = await federation.directory.resolve_by_handle(
        db_session, "bob", "remote.example"
    )

    assert actor.ap_id == ra.ap_id


@pytest.mark.asyncio
async def test_rotate_key_announces_the_new_key(
    federation: Federation,
    db_session: AsyncSession,
    local_actor: models.Actor,
) -> None:
    old_public_key = local_actor.public_key_pem

    # When rotating the key
    key = await federation.rotate_key(db_session, local_actor)

    # Then the actor document exposes the new key
    assert key.public_key_pem != old_public_key
    assert local_actor.ap_actor["publicKey"]["publicKeyPem"] == key.public_key_pem
    # And outgoing requests are signed with it
    assert federation.client.auth.key.id == key.id  # type: ignore
    # And an Update was added to the outbox
    update = (
        await db_session.scalars(
            select(models.Activity).where(models.Activity.ap_type == "Update")
        )
    ).one()
    assert update.ap_object["object"]["publicKey"]["publicKeyPem"] == (
        key.public_key_pem
    )


@pytest.mark.asyncio
async def test_resolve_remote_actor__handle_of_another_actor(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a known remote actor
    ra = setup_remote_actor(respx_mock)
    bob = await federation.directory.resolve_remote_actor(db_session, ra.ap_id)

    # When another actor of the same server claims its preferredUsername
    mallory = factories.RemoteActorFactory(username="mallory")
    ap_actor = dict(mallory.ap_actor)
    ap_actor["preferredUsername"] = "bob"
    respx_mock.get(mallory.ap_id).mock(
        return_value=httpx.Response(200, json=ap_actor)
    )

    # Then it is refused
    with pytest.raises(InvalidActorError):
        await federation.directory.resolve_remote_actor(db_session, mallory.ap_id)

    # And the cached actor and its key are left untouched
    await db_session.refresh(bob)
    assert bob.ap_id == ra.ap_id
    assert bob.inbox_url == ra.inbox_url
    keys = await federation.directory.get_verification_keys(
        db_session, ra.public_key_id
    )
    assert [key.actor.ap_id for key in keys] == [ra.ap_id]
    assert (
        await db_session.scalar(
            select(func.count(models.Actor.id)).where(
                models.Actor.ap_id == mallory.ap_id
            )
        )
    ) == 0


@pytest.mark.asyncio
async def test_resolve_remote_actor__key_owned_by_another_actor(
    federation: Federation,
    db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    ra = factories.RemoteActorFactory()
    ap_actor = dict(ra.ap_actor)
    ap_actor["publicKey"] = {
        **ap_actor["publicKey"],
        "owner": "https://remote.example/users/carol",
    }
    respx_mock.get(ra.ap_id).mock(return_value=httpx.Response(200, json=ap_actor))

    with pytest.raises(InvalidActorError):
        await federation.directory.resolve_remote_actor(db_session, ra.ap_id)
