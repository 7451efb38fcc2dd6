import asyncio
import mimetypes
from datetime import timedelta
from urllib.parse import urlparse

import httpx
from loguru import logger
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import joinedload

from wallog import activitypub as ap
from wallog import models
from wallog.activitypub import ApClient
from wallog.config import Config
from wallog.database import AsyncSession
from wallog.errors import InternalError
from wallog.errors import InvalidActorError
from wallog.errors import NotFoundError
from wallog.errors import UnreachableActorError
from wallog.key import generate_key_pair
from wallog.utils.datetime import now
from wallog.utils.url import InvalidURLError
from wallog.webfinger import get_actor_url

# Tried in order when WebFinger is not available on the remote server
_ACTOR_URL_PATTERNS = [
    "https://{domain}/users/{username}",
    "https://{domain}/@{username}",
    "https://{domain}/actor/{username}",
    "https://{domain}/accounts/{username}",
]


class RemoteActor:
    """Read-only view over a fetched actor document."""

    def __init__(self, ap_actor: ap.RawObject) -> None:
        if (ap_type := ap_actor.get("type")) not in ap.ACTOR_TYPES:
            raise ValueError(f"Unexpected actor type: {ap_type}")

        self.ap_actor = ap_actor

    @property
    def ap_id(self) -> str:
        return ap.get_id(self.ap_actor["id"])

    @property
    def ap_type(self) -> str:
        return ap.as_list(self.ap_actor["type"])[0]

    @property
    def domain(self) -> str:
        hostname = urlparse(self.ap_id).hostname
        if not hostname:
            raise ValueError(f"Invalid actor ID {self.ap_id}")
        return hostname

    @property
    def preferred_username(self) -> str:
        if username := self.ap_actor.get("preferredUsername"):
            return username
        return urlparse(self.ap_id).path.rstrip("/").rsplit("/", 1)[-1]

    @property
    def name(self) -> str | None:
        return self.ap_actor.get("name")

    @property
    def summary(self) -> str | None:
        return self.ap_actor.get("summary")

    @property
    def inbox_url(self) -> str:
        return self.ap_actor["inbox"]

    @property
    def outbox_url(self) -> str | None:
        return self.ap_actor.get("outbox")

    @property
    def shared_inbox_url(self) -> str | None:
        return (self.ap_actor.get("endpoints") or {}).get("sharedInbox")

    @property
    def followers_collection_id(self) -> str | None:
        return self.ap_actor.get("followers")

    @property
    def following_collection_id(self) -> str | None:
        return self.ap_actor.get("following")

    @property
    def icon_url(self) -> str | None:
        if icon := self.ap_actor.get("icon"):
            if isinstance(icon, dict):
                return icon.get("url")
        return None

    @property
    def public_key_as_pem(self) -> str:
        return self.ap_actor["publicKey"]["publicKeyPem"]

    @property
    def public_key_id(self) -> str:
        return self.ap_actor["publicKey"]["id"]


def _validate_actor_document(actor_uri: str, raw_actor: ap.RawObject) -> RemoteActor:
    try:
        remote_actor = RemoteActor(raw_actor)
        remote_actor.ap_id
        remote_actor.inbox_url
        remote_actor.public_key_as_pem
        remote_actor.public_key_id
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidActorError(actor_uri, f"Invalid actor document: {exc!r}")

    # The document must be served by the server it claims to belong to
    if urlparse(remote_actor.ap_id).hostname != urlparse(actor_uri).hostname:
        raise InvalidActorError(
            actor_uri, f"Actor {remote_actor.ap_id} served from {actor_uri}"
        )

    owner = raw_actor["publicKey"].get("owner")
    if owner is not None and owner != remote_actor.ap_id:
        raise InvalidActorError(
            actor_uri, f"Key {remote_actor.public_key_id} is owned by {owner}"
        )

    return remote_actor


def build_actor_document(
    config: Config,
    actor: models.Actor,
) -> ap.RawObject:
    """Returns the ActivityPub document of a local actor."""
    ap_actor: ap.RawObject = {
        "@context": ap.AS_EXTENDED_CTX,
        "type": "Person",
        "id": actor.ap_id,
        "preferredUsername": actor.username,
        "name": actor.display_name,
        "summary": actor.summary,
        "url": config.profile_page_url(actor.username),
        "inbox": actor.inbox_url,
        "outbox": actor.outbox_url,
        "followers": actor.followers_url,
        "following": actor.following_url,
        "endpoints": {"sharedInbox": actor.shared_inbox_url},
        "manuallyApprovesFollowers": False,
        "publicKey": {
            "id": actor.public_key_id,
            "owner": actor.ap_id,
            "publicKeyPem": actor.public_key_pem,
        },
    }
    if actor.icon_url:
        ap_actor["icon"] = {
            "mediaType": mimetypes.guess_type(actor.icon_url)[0],
            "type": "Image",
            "url": actor.icon_url,
        }

    return ap_actor


class ActorDirectory:
    """Resolves local actors from the database and remote actors over HTTP.

    Remote actors are a read-mostly cache, refreshed once the document is older
    than `remote_actor_ttl_hours` or when a signature fails to verify.
    """

    def __init__(self, config: Config, client: ApClient) -> None:
        self.config = config
        self.client = client
        self._inflight: dict[str, asyncio.Task[ap.RawObject]] = {}

    async def get_local_actor(
        self,
        db_session: AsyncSession,
        username: str,
    ) -> models.Actor:
        actor = (
            await db_session.scalars(
                select(models.Actor).where(
                    models.Actor.username == username,
                    models.Actor.domain == self.config.domain,
                    models.Actor.is_local.is_(True),
                )
            )
        ).one_or_none()
        if not actor:
            raise NotFoundError(f"Unknown user {username}")

        return actor

    async def get_local_actor_by_ap_id(
        self,
        db_session: AsyncSession,
        ap_id: str,
    ) -> models.Actor | None:
        return (
            await db_session.scalars(
                select(models.Actor).where(
                    models.Actor.ap_id == ap_id,
                    models.Actor.is_local.is_(True),
                )
            )
        ).one_or_none()

    async def create_default_actor_if_absent(
        self,
        db_session: AsyncSession,
        username: str | None = None,
    ) -> models.Actor:
        username = username or self.config.username
        try:
            return await self.get_local_actor(db_session, username)
        except NotFoundError:
            pass

        ap_id = self.config.actor_url(username)
        public_key_pem, private_key_pem = generate_key_pair(self.config.key_size)
        values = dict(
            ap_id=ap_id,
            ap_type="Person",
            ap_actor={},
            username=username,
            domain=self.config.domain,
            display_name=self.config.name,
            summary=self.config.summary,
            icon_url=self.config.icon_url,
            inbox_url=f"{ap_id}/inbox",
            shared_inbox_url=f"{self.config.base_url}/inbox",
            outbox_url=f"{ap_id}/outbox",
            followers_url=f"{ap_id}/followers",
            following_url=f"{ap_id}/following",
            public_key_id=f"{ap_id}#main-key",
            public_key_pem=public_key_pem,
            private_key_pem=private_key_pem,
            is_local=True,
            created_at=now(),
            updated_at=now(),
        )
        # A concurrent bootstrap may win the race, the unique constraints
        # decide which row is kept
        result = await db_session.execute(
            insert(models.Actor).values(**values).on_conflict_do_nothing()
        )
        actor = await self.get_local_actor(db_session, username)
        if result.rowcount == 1:
            logger.info(f"Created local actor {ap_id}")
            actor.ap_actor = build_actor_document(self.config, actor)
            db_session.add(
                models.Key(
                    key_id=actor.public_key_id,
                    actor_id=actor.id,
                    public_key_pem=public_key_pem,
                    private_key_pem=private_key_pem,
                )
            )
        await db_session.commit()
        return actor

    async def resolve_remote_actor(
        self,
        db_session: AsyncSession,
        actor_uri: str,
        force_refresh: bool = False,
    ) -> models.Actor:
        if local_actor := await self.get_local_actor_by_ap_id(db_session, actor_uri):
            return local_actor

        existing_actor = await self._get_remote_actor(db_session, actor_uri)
        if (
            existing_actor
            and not force_refresh
            and not existing_actor.is_stale(self.config.remote_actor_ttl_hours)
        ):
            return existing_actor

        try:
            raw_actor = await self._fetch_actor_document(actor_uri)
        except UnreachableActorError:
            if existing_actor:
                logger.warning(f"Failed to refresh {actor_uri}, using cached copy")
                return existing_actor
            raise

        remote_actor = _validate_actor_document(actor_uri, raw_actor)
        return await self._save_remote_actor(db_session, remote_actor)

    async def refresh_remote_actor(
        self,
        db_session: AsyncSession,
        actor_uri: str,
    ) -> models.Actor:
        return await self.resolve_remote_actor(
            db_session, actor_uri, force_refresh=True
        )

    async def resolve_by_handle(
        self,
        db_session: AsyncSession,
        username: str,
        domain: str,
    ) -> models.Actor:
        handle = f"{username}@{domain}"
        try:
            actor_url = await get_actor_url(self.client, handle)
        except (httpx.HTTPError, ValueError):
            logger.exception(f"Webfinger failed for {handle}")
            actor_url = None

        if actor_url:
            return await self.resolve_remote_actor(db_session, actor_url)

        logger.info(f"No webfinger for {handle}, trying well-known actor URLs")
        for pattern in _ACTOR_URL_PATTERNS:
            candidate = pattern.format(username=username, domain=domain)
            try:
                return await self.resolve_remote_actor(db_session, candidate)
            except (UnreachableActorError, InvalidActorError):
                continue

        raise UnreachableActorError(handle, f"Failed to resolve {handle}")

    async def get_verification_keys(
        self,
        db_session: AsyncSession,
        key_id: str,
    ) -> list[models.Key]:
        """Keys that may verify a signature made with `key_id`, newest first."""
        keys = (
            await db_session.scalars(
                select(models.Key)
                .where(
                    models.Key.key_id == key_id,
                    models.Key.is_revoked.is_(False),
                )
                .options(joinedload(models.Key.actor))
                .order_by(models.Key.created_at.desc(), models.Key.id.desc())
            )
        ).all()
        return [key for key in keys if not key.is_expired]

    async def get_signing_key(
        self,
        db_session: AsyncSession,
        actor: models.Actor,
    ) -> models.Key:
        keys = (
            await db_session.scalars(
                select(models.Key)
                .where(
                    models.Key.actor_id == actor.id,
                    models.Key.is_active.is_(True),
                    models.Key.is_revoked.is_(False),
                    models.Key.private_key_pem.is_not(None),
                )
                .order_by(models.Key.created_at.desc(), models.Key.id.desc())
            )
        ).all()
        for key in keys:
            if not key.is_expired:
                return key

        raise InternalError(f"No usable signing key for {actor.ap_id}")

    async def rotate_key(
        self,
        db_session: AsyncSession,
        actor: models.Actor,
    ) -> models.Key:
        """Replaces the active key, older keys stay verifiable for a grace period."""
        if not actor.is_local:
            raise ValueError(f"Cannot rotate the key of remote actor {actor.ap_id}")

        await db_session.execute(
            update(models.Key)
            .where(
                models.Key.actor_id == actor.id,
                models.Key.is_active.is_(True),
            )
            .values(
                is_active=False,
                expires_at=now() + timedelta(hours=self.config.rotated_key_grace_hours),
            )
        )
        public_key_pem, private_key_pem = generate_key_pair(self.config.key_size)
        new_key = models.Key(
            key_id=actor.public_key_id,
            actor_id=actor.id,
            public_key_pem=public_key_pem,
            private_key_pem=private_key_pem,
        )
        db_session.add(new_key)
        actor.public_key_pem = public_key_pem
        actor.private_key_pem = private_key_pem
        actor.updated_at = now()
        actor.ap_actor = build_actor_document(self.config, actor)
        await db_session.commit()
        logger.info(f"Rotated key {actor.public_key_id}")
        return new_key

    async def revoke_key(self, db_session: AsyncSession, key_id: str) -> int:
        result = await db_session.execute(
            update(models.Key)
            .where(models.Key.key_id == key_id, models.Key.is_revoked.is_(False))
            .values(is_revoked=True, is_active=False)
        )
        await db_session.commit()
        logger.info(f"Revoked {result.rowcount} key(s) for {key_id}")
        return result.rowcount

    async def _get_remote_actor(
        self,
        db_session: AsyncSession,
        actor_uri: str,
    ) -> models.Actor | None:
        return (
            await db_session.scalars(
                select(models.Actor).where(models.Actor.ap_id == actor_uri)
            )
        ).one_or_none()

    async def _fetch_actor_document(self, actor_uri: str) -> ap.RawObject:
        """Single-flight fetch, concurrent callers for a URI share one request."""
        task = self._inflight.get(actor_uri)
        if task is None:
            task = asyncio.ensure_future(self._do_fetch_actor_document(actor_uri))
            self._inflight[actor_uri] = task
            task.add_done_callback(lambda _: self._inflight.pop(actor_uri, None))

        return await asyncio.shield(task)

    async def _do_fetch_actor_document(self, actor_uri: str) -> ap.RawObject:
        try:
            try:
                raw_actor = await self.client.fetch(actor_uri, disable_httpsig=True)
            except ap.ObjectUnavailableError:
                if not self.client.auth:
                    raise
                # The remote server requires signed fetches
                raw_actor = await self.client.fetch(actor_uri)

            if raw_actor.get("type") == "Key" and raw_actor.get("owner"):
                # The key is not embedded in the actor
                owner = ap.get_id(raw_actor["owner"])
                raw_actor = await self.client.fetch(owner, disable_httpsig=True)
        except (ap.FetchError, ap.NotAnObjectError, httpx.HTTPError) as exc:
            logger.warning(f"Failed to fetch actor {actor_uri}: {exc!r}")
            raise UnreachableActorError(actor_uri) from exc
        except InvalidURLError as exc:
            raise InvalidActorError(actor_uri, str(exc)) from exc

        return raw_actor

    async def _save_remote_actor(
        self,
        db_session: AsyncSession,
        remote_actor: RemoteActor,
    ) -> models.Actor:
        values = dict(
            ap_actor=remote_actor.ap_actor,
            ap_type=remote_actor.ap_type,
            username=remote_actor.preferred_username,
            domain=remote_actor.domain,
            display_name=remote_actor.name,
            summary=remote_actor.summary,
            icon_url=remote_actor.icon_url,
            inbox_url=remote_actor.inbox_url,
            shared_inbox_url=remote_actor.shared_inbox_url,
            outbox_url=remote_actor.outbox_url,
            followers_url=remote_actor.followers_collection_id,
            following_url=remote_actor.following_collection_id,
            public_key_id=remote_actor.public_key_id,
            public_key_pem=remote_actor.public_key_as_pem,
            is_local=False,
            fetched_at=now(),
            updated_at=now(),
        )
        # preferredUsername is chosen by the remote document, it must not take
        # over the cached row of another actor
        squatted_actor = (
            await db_session.scalars(
                select(models.Actor).where(
                    models.Actor.username == remote_actor.preferred_username,
                    models.Actor.domain == remote_actor.domain,
                    models.Actor.ap_id != remote_actor.ap_id,
                )
            )
        ).first()
        if squatted_actor:
            logger.warning(
                f"{remote_actor.ap_id} claims the handle of {squatted_actor.ap_id}"
            )
            raise InvalidActorError(
                remote_actor.ap_id,
                f"@{remote_actor.preferred_username}@{remote_actor.domain} "
                f"belongs to {squatted_actor.ap_id}",
            )

        existing_actor = await self._get_remote_actor(db_session, remote_actor.ap_id)
        if existing_actor:
            if existing_actor.is_local:
                raise InvalidActorError(
                    remote_actor.ap_id, "Remote document claims a local actor"
                )
            for column, value in values.items():
                setattr(existing_actor, column, value)
        else:
            await db_session.execute(
                insert(models.Actor)
                .values(ap_id=remote_actor.ap_id, created_at=now(), **values)
                .on_conflict_do_nothing()
            )

        actor = await self._get_remote_actor(db_session, remote_actor.ap_id)
        if actor is None:
            raise InternalError(f"Failed to save {remote_actor.ap_id}")

        await self._save_remote_key(db_session, actor, remote_actor)
        await db_session.commit()
        logger.info(f"Saved remote actor {actor.ap_id}")
        return actor

    async def _save_remote_key(
        self,
        db_session: AsyncSession,
        actor: models.Actor,
        remote_actor: RemoteActor,
    ) -> None:
        """Caches the published key, replaced keys expire after the grace period."""
        key_id = remote_actor.public_key_id
        public_key_pem = remote_actor.public_key_as_pem
        active_keys = (
            await db_session.scalars(
                select(models.Key).where(
                    models.Key.actor_id == actor.id,
                    models.Key.is_active.is_(True),
                    models.Key.is_revoked.is_(False),
                )
            )
        ).all()
        if any(
            key.key_id == key_id and key.public_key_pem == public_key_pem
            for key in active_keys
        ):
            return

        expires_at = now() + timedelta(hours=self.config.rotated_key_grace_hours)
        for key in active_keys:
            logger.info(f"{actor.ap_id} rotated {key.key_id}")
            key.is_active = False
            key.expires_at = expires_at

        logger.info(f"Caching key {key_id} for {actor.ap_id}")
        db_session.add(
            models.Key(
                key_id=key_id,
                actor_id=actor.id,
                public_key_pem=public_key_pem,
            )
        )
