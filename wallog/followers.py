from loguru import logger
from sqlalchemy import delete
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert

from wallog import models
from wallog.database import AsyncSession
from wallog.utils.datetime import now


class FollowRegistry:
    """Sole owner of the follower edges of local actors."""

    async def add_follower(
        self,
        db_session: AsyncSession,
        target_actor_id: int,
        follower_uri: str,
        follower_username: str | None,
        follower_domain: str | None,
        follower_inbox_url: str,
        source_activity_id: str | None,
        follower_shared_inbox_url: str | None = None,
    ) -> models.Follower:
        """Upserts the edge, a repeated Follow refreshes it in place."""
        values = dict(
            follower_username=follower_username,
            follower_domain=follower_domain,
            follower_inbox_url=follower_inbox_url,
            follower_shared_inbox_url=follower_shared_inbox_url,
            source_activity_ap_id=source_activity_id,
        )
        await db_session.execute(
            insert(models.Follower)
            .values(
                target_actor_id=target_actor_id,
                follower_ap_id=follower_uri,
                created_at=now(),
                **values,
            )
            .on_conflict_do_update(
                index_elements=["target_actor_id", "follower_ap_id"],
                set_=values,
            )
        )
        await db_session.commit()
        logger.info(f"{follower_uri} follows actor {target_actor_id}")

        follower = await self.get_follower(db_session, target_actor_id, follower_uri)
        if follower is None:
            raise ValueError("Should never happen")
        return follower

    async def remove_follower(
        self,
        db_session: AsyncSession,
        target_actor_id: int,
        follower_uri: str,
    ) -> bool:
        """Returns False when there was no such edge, replayed Undos are no-ops."""
        result = await db_session.execute(
            delete(models.Follower).where(
                models.Follower.target_actor_id == target_actor_id,
                models.Follower.follower_ap_id == follower_uri,
            )
        )
        await db_session.commit()
        if result.rowcount:
            logger.info(f"{follower_uri} unfollowed actor {target_actor_id}")
            return True

        logger.info(f"{follower_uri} was not following actor {target_actor_id}")
        return False

    async def get_follower(
        self,
        db_session: AsyncSession,
        target_actor_id: int,
        follower_uri: str,
    ) -> models.Follower | None:
        return (
            await db_session.scalars(
                select(models.Follower)
                .where(
                    models.Follower.target_actor_id == target_actor_id,
                    models.Follower.follower_ap_id == follower_uri,
                )
                .execution_options(populate_existing=True)
            )
        ).one_or_none()

    async def get_by_source_activity(
        self,
        db_session: AsyncSession,
        source_activity_id: str,
    ) -> models.Follower | None:
        return (
            await db_session.scalars(
                select(models.Follower).where(
                    models.Follower.source_activity_ap_id == source_activity_id
                )
            )
        ).first()

    async def list_follower_inboxes(
        self,
        db_session: AsyncSession,
        target_actor_id: int,
    ) -> list[str]:
        """Delivery targets, a shared inbox is listed once for all its followers."""
        rows = (
            await db_session.execute(
                select(
                    models.Follower.follower_inbox_url,
                    models.Follower.follower_shared_inbox_url,
                )
                .where(models.Follower.target_actor_id == target_actor_id)
                .order_by(models.Follower.created_at, models.Follower.id)
            )
        ).all()

        inboxes: list[str] = []
        seen = set()
        for inbox_url, shared_inbox_url in rows:
            url = shared_inbox_url or inbox_url
            if url not in seen:
                seen.add(url)
                inboxes.append(url)
        return inboxes

    async def count_followers(
        self,
        db_session: AsyncSession,
        target_actor_id: int,
    ) -> int:
        return await db_session.scalar(
            select(func.count(models.Follower.id)).where(
                models.Follower.target_actor_id == target_actor_id
            )
        )

    async def page(
        self,
        db_session: AsyncSession,
        target_actor_id: int,
        page: int,
        limit: int,
    ) -> list[models.Follower]:
        """1-based pages, oldest follower first."""
        return list(
            (
                await db_session.scalars(
                    select(models.Follower)
                    .where(models.Follower.target_actor_id == target_actor_id)
                    .order_by(models.Follower.created_at, models.Follower.id)
                    .offset((max(page, 1) - 1) * limit)
                    .limit(limit)
                )
            ).all()
        )
