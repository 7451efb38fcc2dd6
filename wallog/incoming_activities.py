import enum
import json
from dataclasses import dataclass
from typing import assert_never

from loguru import logger

from wallog import activitypub as ap
from wallog import models
from wallog.actor import ActorDirectory
from wallog.database import AsyncSession
from wallog.errors import ActorResolutionError
from wallog.errors import FederationError
from wallog.errors import MalformedRequestError
from wallog.errors import NotFoundError
from wallog.errors import UnauthorizedError
from wallog.followers import FollowRegistry
from wallog.httpsig import HTTPSigInfo
from wallog.outbox import OutboxLog
from wallog.outgoing_activities import DeliveryService


@dataclass(frozen=True)
class FollowActivity:
    activity_id: str
    actor_id: str
    object_id: str
    raw: ap.RawObject


@dataclass(frozen=True)
class UndoFollowActivity:
    activity_id: str
    actor_id: str
    # At least one of them is set, depending on whether the Follow was embedded
    follow_activity_id: str | None
    followed_actor_id: str | None
    raw: ap.RawObject


@dataclass(frozen=True)
class UnsupportedActivity:
    activity_id: str
    actor_id: str
    ap_type: str
    raw: ap.RawObject


InboxActivity = FollowActivity | UndoFollowActivity | UnsupportedActivity


class InboxState(str, enum.Enum):
    RECEIVED = "received"
    SIGNATURE_VERIFIED = "signature_verified"
    DISPATCHED = "dispatched"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class InboxResult:
    state: InboxState
    activity: InboxActivity
    is_duplicate: bool = False
    error: str | None = None


def _get_id_or_none(val) -> str | None:
    try:
        return ap.get_id(val)
    except (KeyError, TypeError, ValueError):
        return None


def _get_type_or_none(val) -> str | None:
    types = ap.as_list(val)
    if types and isinstance(types[0], str):
        return types[0]
    return None


def parse_activity(raw_activity: ap.RawObject) -> InboxActivity:
    if not isinstance(raw_activity, dict):
        raise MalformedRequestError("Activity must be a JSON object")

    if not (ap_type := _get_type_or_none(raw_activity.get("type"))):
        raise MalformedRequestError("Missing type")
    activity_id = _get_id_or_none(raw_activity.get("id"))
    actor_id = _get_id_or_none(raw_activity.get("actor"))
    if not activity_id or not actor_id:
        raise MalformedRequestError("Missing id or actor")

    if ap_type == "Follow":
        if not (object_id := _get_id_or_none(raw_activity.get("object"))):
            raise MalformedRequestError("Follow without object")
        return FollowActivity(
            activity_id=activity_id,
            actor_id=actor_id,
            object_id=object_id,
            raw=raw_activity,
        )

    if ap_type == "Undo":
        undone = raw_activity.get("object")
        if isinstance(undone, str):
            return UndoFollowActivity(
                activity_id=activity_id,
                actor_id=actor_id,
                follow_activity_id=undone,
                followed_actor_id=None,
                raw=raw_activity,
            )
        if (
            isinstance(undone, dict)
            and _get_type_or_none(undone.get("type")) == "Follow"
        ):
            follow_activity_id = _get_id_or_none(undone.get("id"))
            followed_actor_id = _get_id_or_none(undone.get("object"))
            if not follow_activity_id and not followed_actor_id:
                raise MalformedRequestError("Undo of an unidentified Follow")
            return UndoFollowActivity(
                activity_id=activity_id,
                actor_id=actor_id,
                follow_activity_id=follow_activity_id,
                followed_actor_id=followed_actor_id,
                raw=raw_activity,
            )
        if not undone:
            raise MalformedRequestError("Undo without object")

    return UnsupportedActivity(
        activity_id=activity_id,
        actor_id=actor_id,
        ap_type=ap_type,
        raw=raw_activity,
    )


def parse_body(body: bytes) -> ap.RawObject:
    if not body or not body.strip():
        raise MalformedRequestError("Empty body")
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedRequestError("Invalid JSON body")
    if not isinstance(payload, dict):
        raise MalformedRequestError("Activity must be a JSON object")
    return payload


class InboxProcessor:
    """Interprets verified inbox deliveries.

    `Received -> SignatureVerified -> Dispatched -> Accepted | Rejected`. A
    rejection after dispatch is logged, the peer still gets a 202.
    """

    def __init__(
        self,
        directory: ActorDirectory,
        followers: FollowRegistry,
        outbox: OutboxLog,
        delivery: DeliveryService,
    ) -> None:
        self.directory = directory
        self.followers = followers
        self.outbox = outbox
        self.delivery = delivery

    async def process(
        self,
        db_session: AsyncSession,
        body: bytes,
        httpsig_info: HTTPSigInfo,
        username: str | None = None,
    ) -> InboxResult:
        activity = parse_activity(parse_body(body))
        logger.info(
            f"{InboxState.RECEIVED.value} {type(activity).__name__} "
            f"{activity.activity_id} from {activity.actor_id}"
        )

        target_actor = None
        if username:
            target_actor = await self.directory.get_local_actor(db_session, username)

        if (
            not httpsig_info.has_valid_signature
            or httpsig_info.signed_by_ap_actor_id != activity.actor_id
        ):
            logger.warning(
                f"{activity.activity_id} signed by "
                f"{httpsig_info.signed_by_ap_actor_id}, not by {activity.actor_id}"
            )
            raise UnauthorizedError("Activity not signed by its actor")
        logger.info(f"{InboxState.SIGNATURE_VERIFIED.value} {activity.activity_id}")

        if not await self.outbox.save_inbox_activity(
            db_session, activity.raw, target_actor
        ):
            logger.info(f"Already processed {activity.activity_id}, skipping")
            return InboxResult(
                state=InboxState.ACCEPTED, activity=activity, is_duplicate=True
            )

        logger.info(f"{InboxState.DISPATCHED.value} {activity.activity_id}")
        try:
            if isinstance(activity, FollowActivity):
                await self._handle_follow(db_session, activity, target_actor)
            elif isinstance(activity, UndoFollowActivity):
                await self._handle_undo_follow(db_session, activity, target_actor)
            elif isinstance(activity, UnsupportedActivity):
                logger.info(f"Ignoring unsupported {activity.ap_type} activity")
            else:
                assert_never(activity)
        except FederationError as exc:
            logger.warning(
                f"{InboxState.REJECTED.value} {activity.activity_id} "
                f"from {activity.actor_id}: {exc}"
            )
            return InboxResult(
                state=InboxState.REJECTED, activity=activity, error=str(exc)
            )

        logger.info(f"{InboxState.ACCEPTED.value} {activity.activity_id}")
        return InboxResult(state=InboxState.ACCEPTED, activity=activity)

    async def _resolve_target(
        self,
        db_session: AsyncSession,
        followed_actor_id: str,
        target_actor: models.Actor | None,
    ) -> models.Actor:
        if target_actor:
            if target_actor.ap_id != followed_actor_id:
                raise NotFoundError(
                    f"{followed_actor_id} is not the owner of this inbox"
                )
            return target_actor

        local_actor = await self.directory.get_local_actor_by_ap_id(
            db_session, followed_actor_id
        )
        if not local_actor:
            raise NotFoundError(f"{followed_actor_id} is not a local actor")
        return local_actor

    async def _handle_follow(
        self,
        db_session: AsyncSession,
        activity: FollowActivity,
        target_actor: models.Actor | None,
    ) -> None:
        follower = await self.directory.resolve_remote_actor(
            db_session, activity.actor_id
        )
        target_actor = await self._resolve_target(
            db_session, activity.object_id, target_actor
        )
        await self.followers.add_follower(
            db_session,
            target_actor_id=target_actor.id,
            follower_uri=follower.ap_id,
            follower_username=follower.username,
            follower_domain=follower.domain,
            follower_inbox_url=follower.inbox_url,
            source_activity_id=activity.activity_id,
            follower_shared_inbox_url=follower.shared_inbox_url,
        )
        self.delivery.spawn(self.delivery.send_accept_follow(activity.raw, target_actor))

    async def _handle_undo_follow(
        self,
        db_session: AsyncSession,
        activity: UndoFollowActivity,
        target_actor: models.Actor | None,
    ) -> None:
        try:
            await self.directory.resolve_remote_actor(db_session, activity.actor_id)
        except ActorResolutionError:
            # A gone actor must still be able to unfollow
            logger.info(f"Could not refresh {activity.actor_id}, removing anyway")

        if activity.followed_actor_id:
            target_actor = await self._resolve_target(
                db_session, activity.followed_actor_id, target_actor
            )
            target_actor_id = target_actor.id
        else:
            edge = await self.followers.get_by_source_activity(
                db_session, activity.follow_activity_id  # type: ignore
            )
            if not edge or edge.follower_ap_id != activity.actor_id:
                logger.info(f"No follow matching {activity.follow_activity_id}")
                return
            target_actor_id = edge.target_actor_id

        await self.followers.remove_follower(
            db_session, target_actor_id, activity.actor_id  # type: ignore
        )
