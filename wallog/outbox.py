import uuid

from loguru import logger
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from wallog import activitypub as ap
from wallog import models
from wallog.database import AsyncSession
from wallog.utils.datetime import now
from wallog.utils.datetime import parse_isoformat


def _published_at(activity: ap.RawObject):
    if published := activity.get("published"):
        try:
            return parse_isoformat(published)
        except ValueError:
            logger.info(f"Invalid published date {published!r}")
    return now()


def _object_ap_id(activity: ap.RawObject) -> str | None:
    try:
        return ap.get_object_id(activity)
    except (ValueError, KeyError, TypeError):
        return None


class OutboxLog:
    """Append-only log of the activities sent and received by local actors."""

    async def append(
        self,
        db_session: AsyncSession,
        activity: ap.RawObject,
        actor: models.Actor,
        local_post_id: str | None = None,
    ) -> models.Activity:
        outbox_activity = models.Activity(
            direction=models.Direction.OUTBOX,
            ap_id=activity["id"],
            ap_type=ap.as_list(activity["type"])[0],
            ap_actor_id=actor.ap_id,
            actor_id=actor.id,
            activity_object_ap_id=_object_ap_id(activity),
            ap_published_at=_published_at(activity),
            ap_object=activity,
            local_post_id=local_post_id,
        )
        db_session.add(outbox_activity)
        await db_session.commit()
        logger.info(f"Appended {outbox_activity.ap_type} {outbox_activity.ap_id}")
        return outbox_activity

    async def save_inbox_activity(
        self,
        db_session: AsyncSession,
        activity: ap.RawObject,
        target_actor: models.Actor | None,
    ) -> bool:
        """Records a received activity, returns False if it was already seen."""
        result = await db_session.execute(
            insert(models.Activity)
            .values(
                direction=models.Direction.INBOX,
                ap_id=activity["id"],
                ap_type=ap.as_list(activity["type"])[0],
                ap_actor_id=ap.get_id(activity["actor"]),
                actor_id=target_actor.id if target_actor else None,
                activity_object_ap_id=_object_ap_id(activity),
                ap_published_at=_published_at(activity),
                ap_object=activity,
                created_at=now(),
            )
            .on_conflict_do_nothing()
        )
        await db_session.commit()
        return result.rowcount == 1

    async def count(self, db_session: AsyncSession, actor_id: int) -> int:
        return await db_session.scalar(
            select(func.count(models.Activity.id)).where(
                models.Activity.direction == models.Direction.OUTBOX,
                models.Activity.actor_id == actor_id,
            )
        )

    async def page(
        self,
        db_session: AsyncSession,
        actor_id: int,
        page: int,
        limit: int,
    ) -> list[models.Activity]:
        """1-based pages, most recent first."""
        return list(
            (
                await db_session.scalars(
                    select(models.Activity)
                    .where(
                        models.Activity.direction == models.Direction.OUTBOX,
                        models.Activity.actor_id == actor_id,
                    )
                    .order_by(
                        models.Activity.ap_published_at.desc(),
                        models.Activity.id.desc(),
                    )
                    .offset((max(page, 1) - 1) * limit)
                    .limit(limit)
                )
            ).all()
        )

    async def get_by_ap_id(
        self,
        db_session: AsyncSession,
        ap_id: str,
        direction: models.Direction = models.Direction.OUTBOX,
    ) -> models.Activity | None:
        return (
            await db_session.scalars(
                select(models.Activity).where(
                    models.Activity.direction == direction,
                    models.Activity.ap_id == ap_id,
                )
            )
        ).one_or_none()

    async def get_object(
        self,
        db_session: AsyncSession,
        object_ap_id: str,
    ) -> tuple[ap.RawObject, bool] | None:
        """Returns the published object and whether it was deleted since."""
        activities = (
            await db_session.scalars(
                select(models.Activity)
                .where(
                    models.Activity.direction == models.Direction.OUTBOX,
                    models.Activity.activity_object_ap_id == object_ap_id,
                    models.Activity.ap_type.in_(["Create", "Delete"]),
                )
                .order_by(models.Activity.id)
            )
        ).all()
        create = next((a for a in activities if a.ap_type == "Create"), None)
        if create is None:
            return None

        is_deleted = any(a.ap_type == "Delete" for a in activities)
        return create.ap_object["object"], is_deleted

    async def get_create_for_local_post(
        self,
        db_session: AsyncSession,
        local_post_id: str,
    ) -> models.Activity | None:
        return (
            await db_session.scalars(
                select(models.Activity).where(
                    models.Activity.direction == models.Direction.OUTBOX,
                    models.Activity.ap_type == "Create",
                    models.Activity.local_post_id == local_post_id,
                )
            )
        ).first()


def allocate_outbox_id() -> str:
    return uuid.uuid4().hex


def activity_url(base_url: str, outbox_id: str) -> str:
    return f"{base_url}/activities/{outbox_id}"


def object_url(base_url: str, outbox_id: str) -> str:
    return f"{base_url}/objects/{outbox_id}"
