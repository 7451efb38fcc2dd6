import typing

from loguru import logger

from wallog import activitypub as ap
from wallog import models
from wallog.database import AsyncSession
from wallog.errors import NotFoundError
from wallog.events import ContentPublished
from wallog.outbox import activity_url
from wallog.outbox import allocate_outbox_id
from wallog.outbox import object_url
from wallog.utils.datetime import isoformat
from wallog.utils.datetime import now

if typing.TYPE_CHECKING:
    from wallog.federation import Federation


def build_note_object(
    base_url: str,
    actor: models.Actor,
    outbox_id: str,
    event: ContentPublished,
) -> ap.RawObject:
    note_id = object_url(base_url, outbox_id)
    note: ap.RawObject = {
        "@context": ap.AS_EXTENDED_CTX,
        "type": "Note",
        "id": note_id,
        "attributedTo": actor.ap_id,
        "content": event.content,
        "published": isoformat(now()),
        "to": [ap.AS_PUBLIC],
        "cc": [actor.followers_url],
        "url": event.url or note_id,
        "tag": [
            {
                "type": "Hashtag",
                "href": f"{base_url}/tags/{tag.lstrip('#')}",
                "name": f"#{tag.lstrip('#')}",
            }
            for tag in event.tags
        ],
        "attachment": [],
        "sensitive": False,
    }
    if event.title:
        note["name"] = event.title
    return note


def wrap_in_create(note: ap.RawObject, create_id: str) -> ap.RawObject:
    return {
        "@context": ap.AS_EXTENDED_CTX,
        "id": create_id,
        "type": "Create",
        "actor": note["attributedTo"],
        "published": note["published"],
        "to": note["to"],
        "cc": note["cc"],
        "object": ap.remove_context(note),
    }


async def send_create(
    db_session: AsyncSession,
    federation: "Federation",
    actor: models.Actor,
    event: ContentPublished,
) -> models.Activity:
    base_url = federation.config.base_url
    outbox_id = allocate_outbox_id()
    note = build_note_object(base_url, actor, outbox_id, event)
    create = wrap_in_create(note, activity_url(base_url, outbox_id))

    outbox_activity = await federation.outbox.append(
        db_session, create, actor, local_post_id=event.local_post_id
    )
    logger.info(f"Announcing {event.local_post_id} as {note['id']}")
    federation.delivery.spawn(federation.delivery.deliver_to_followers(create, actor))
    return outbox_activity


async def send_delete(
    db_session: AsyncSession,
    federation: "Federation",
    actor: models.Actor,
    local_post_id: str,
) -> models.Activity | None:
    create = await federation.outbox.get_create_for_local_post(
        db_session, local_post_id
    )
    if not create or not create.activity_object_ap_id:
        raise NotFoundError(f"{local_post_id} was never published")

    published = await federation.outbox.get_object(
        db_session, create.activity_object_ap_id
    )
    if published and published[1]:
        logger.info(f"{local_post_id} is already deleted")
        return None

    delete = {
        "@context": ap.AS_EXTENDED_CTX,
        "id": activity_url(federation.config.base_url, allocate_outbox_id()),
        "type": "Delete",
        "actor": actor.ap_id,
        "to": [ap.AS_PUBLIC],
        "cc": [actor.followers_url],
        "object": {
            "type": "Tombstone",
            "id": create.activity_object_ap_id,
        },
    }
    outbox_activity = await federation.outbox.append(
        db_session, delete, actor, local_post_id=local_post_id
    )
    federation.delivery.spawn(federation.delivery.deliver_to_followers(delete, actor))
    return outbox_activity


async def send_actor_update(
    db_session: AsyncSession,
    federation: "Federation",
    actor: models.Actor,
) -> models.Activity:
    update = {
        "@context": ap.AS_EXTENDED_CTX,
        "id": activity_url(federation.config.base_url, allocate_outbox_id()),
        "type": "Update",
        "actor": actor.ap_id,
        "to": [ap.AS_PUBLIC],
        "object": ap.remove_context(actor.ap_actor),
    }
    outbox_activity = await federation.outbox.append(db_session, update, actor)
    federation.delivery.spawn(federation.delivery.deliver_to_followers(update, actor))
    return outbox_activity
