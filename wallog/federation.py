from typing import Callable

import httpx
from loguru import logger

from wallog import boxes
from wallog import models
from wallog.activitypub import ApClient
from wallog.actor import ActorDirectory
from wallog.config import Config
from wallog.database import AsyncSession
from wallog.database import Database
from wallog.events import ContentDeleted
from wallog.events import ContentPublished
from wallog.events import EventBus
from wallog.followers import FollowRegistry
from wallog.httpsig import HTTPXSigAuth
from wallog.httpsig import SignatureService
from wallog.incoming_activities import InboxProcessor
from wallog.outbox import OutboxLog
from wallog.outgoing_activities import DeliveryService


class Federation:
    """Builds the federation services and owns their lifecycle.

    `startup()` runs at process start (tables, default actor, event
    subscriptions), `shutdown()` waits for background deliveries before closing
    the HTTP client and the database engine.
    """

    def __init__(
        self,
        config: Config,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.database = Database(config)
        self.client = ApClient(config, http_client)
        self.directory = ActorDirectory(config, self.client)
        self.signatures = SignatureService(config, self.directory)
        self.followers = FollowRegistry()
        self.outbox = OutboxLog()
        self.delivery = DeliveryService(
            config,
            self.database,
            self.client,
            self.signatures,
            self.directory,
            self.followers,
            self.outbox,
        )
        self.inbox = InboxProcessor(
            self.directory,
            self.followers,
            self.outbox,
            self.delivery,
        )
        self.events = EventBus()
        self._unsubscribers: list[Callable[[], None]] = []

    async def startup(self) -> None:
        await self.database.init()
        async with self.database.session() as db_session:
            actor = await self.directory.create_default_actor_if_absent(db_session)
            key = await self.directory.get_signing_key(db_session, actor)

        self.client.auth = HTTPXSigAuth(self.signatures, key)
        self._unsubscribers = [
            self.events.subscribe(ContentPublished, self._on_content_published),
            self.events.subscribe(ContentDeleted, self._on_content_deleted),
        ]
        logger.info(f"Federation ready for {actor.ap_id}")

    async def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        await self.delivery.drain()
        await self.client.aclose()
        await self.database.shutdown()

    async def rotate_key(
        self,
        db_session: AsyncSession,
        actor: models.Actor,
    ) -> models.Key:
        """Rotates the actor key and announces the new one to followers."""
        key = await self.directory.rotate_key(db_session, actor)
        if actor.username == self.config.username:
            self.client.auth = HTTPXSigAuth(self.signatures, key)
        await boxes.send_actor_update(db_session, self, actor)
        return key

    async def _on_content_published(self, event: ContentPublished) -> None:
        async with self.database.session() as db_session:
            actor = await self.directory.get_local_actor(
                db_session, event.username or self.config.username
            )
            await boxes.send_create(db_session, self, actor, event)

    async def _on_content_deleted(self, event: ContentDeleted) -> None:
        async with self.database.session() as db_session:
            actor = await self.directory.get_local_actor(
                db_session, event.username or self.config.username
            )
            await boxes.send_delete(db_session, self, actor, event.local_post_id)
