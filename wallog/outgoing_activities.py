import asyncio
import email.utils
import time
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Coroutine

import httpx
from loguru import logger

from wallog import activitypub as ap
from wallog import models
from wallog.activitypub import ApClient
from wallog.actor import ActorDirectory
from wallog.config import Config
from wallog.database import Database
from wallog.errors import ActorResolutionError
from wallog.errors import DeliveryError
from wallog.followers import FollowRegistry
from wallog.httpsig import SignatureService
from wallog.outbox import OutboxLog
from wallog.outbox import activity_url
from wallog.outbox import allocate_outbox_id
from wallog.utils.datetime import now
from wallog.utils.url import InvalidURLError

# Client errors that may succeed later
_RETRYABLE_4XX = [401, 408, 429]


@dataclass(frozen=True)
class DeliveryResult:
    inbox_url: str
    is_success: bool
    tries: int
    status_code: int | None = None
    error: str | None = None


@dataclass
class DeliveryReport:
    activity_id: str
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def successes(self) -> list[DeliveryResult]:
        return [result for result in self.results if result.is_success]

    @property
    def failures(self) -> list[DeliveryResult]:
        return [result for result in self.results if not result.is_success]


def _parse_retry_after(retry_after: str | None) -> float | None:
    if not retry_after:
        return None
    try:
        # Retry-After: 120
        seconds = float(int(retry_after))
    except ValueError:
        # Retry-After: Wed, 21 Oct 2015 07:28:00 GMT
        dt_tuple = email.utils.parsedate_tz(retry_after)
        if dt_tuple is None:
            return None

        seconds = email.utils.mktime_tz(dt_tuple) - time.time()

    return max(seconds, 0.0)


def build_accept_activity(
    base_url: str,
    follow_activity: ap.RawObject,
    target_actor: models.Actor,
) -> ap.RawObject:
    return {
        "@context": ap.AS_CTX,
        "id": activity_url(base_url, allocate_outbox_id()),
        "type": "Accept",
        "actor": target_actor.ap_id,
        "object": ap.remove_context(follow_activity),
        "to": [ap.get_id(follow_activity["actor"])],
    }


class DeliveryService:
    """Signs and POSTs activities to remote inboxes.

    Every destination is retried on its own with exponential backoff, a
    failing inbox never affects the others.
    """

    def __init__(
        self,
        config: Config,
        database: Database,
        client: ApClient,
        signatures: SignatureService,
        directory: ActorDirectory,
        followers: FollowRegistry,
        outbox: OutboxLog,
    ) -> None:
        self.config = config
        self.database = database
        self.client = client
        self.signatures = signatures
        self.directory = directory
        self.followers = followers
        self.outbox = outbox
        self._semaphore = asyncio.Semaphore(config.delivery.concurrency)
        self._tasks: set[asyncio.Task] = set()

    def _backoff(self, attempt: int) -> float:
        delivery = self.config.delivery
        return min(
            delivery.base_delay_seconds * (2 ** (attempt - 1)),
            delivery.max_delay_seconds,
        )

    async def deliver_to_inbox(
        self,
        inbox_url: str,
        activity: ap.RawObject,
        actor: models.Actor,
        key: models.Key | None = None,
    ) -> httpx.Response:
        """Makes a single delivery attempt, raises `DeliveryError` on failure."""
        if key is None:
            async with self.database.session() as db_session:
                key = await self.directory.get_signing_key(db_session, actor)

        body = ap.dumps(activity)
        headers = self.signatures.sign_request(inbox_url, "POST", key, body)
        headers["User-Agent"] = self.config.user_agent

        try:
            resp = await self.client.post(
                inbox_url,
                body,
                headers,
                timeout=self.config.delivery.timeout_seconds,
            )
        except InvalidURLError as exc:
            raise DeliveryError(inbox_url, str(exc), retryable=False) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(inbox_url, repr(exc)) from exc

        if resp.is_success:
            return resp

        status_code = resp.status_code
        retry_after = None
        if status_code in [429, 503]:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))

        raise DeliveryError(
            inbox_url,
            f"HTTP {status_code}: {resp.text[:200]}",
            remote_status_code=status_code,
            retryable=status_code >= 500 or status_code in _RETRYABLE_4XX,
            retry_after=retry_after,
        )

    async def deliver_with_retries(
        self,
        inbox_url: str,
        activity: ap.RawObject,
        actor: models.Actor,
        key: models.Key | None = None,
    ) -> DeliveryResult:
        max_attempts = self.config.delivery.max_attempts
        error: DeliveryError | None = None
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            try:
                async with self._semaphore:
                    resp = await asyncio.wait_for(
                        self.deliver_to_inbox(inbox_url, activity, actor, key),
                        timeout=self.config.delivery.timeout_seconds,
                    )
            except asyncio.TimeoutError:
                error = DeliveryError(inbox_url, "timed out")
            except DeliveryError as delivery_error:
                error = delivery_error
            else:
                logger.info(
                    f"Delivered {activity['type']} {activity['id']} to {inbox_url} "
                    f"({resp.status_code}, {attempt=})"
                )
                result = DeliveryResult(
                    inbox_url=inbox_url,
                    is_success=True,
                    tries=attempt,
                    status_code=resp.status_code,
                )
                await self._record(activity, result)
                return result

            logger.warning(f"{error} ({attempt=}/{max_attempts})")
            if not error.retryable or attempt == max_attempts:
                break

            delay = self._backoff(attempt)
            if error.retry_after is not None:
                delay = min(error.retry_after, self.config.delivery.max_delay_seconds)
            await asyncio.sleep(delay)

        logger.error(f"Dropping {activity['type']} {activity['id']} for {inbox_url}")
        result = DeliveryResult(
            inbox_url=inbox_url,
            is_success=False,
            tries=attempt,
            status_code=error.remote_status_code if error else None,
            error=str(error),
        )
        await self._record(activity, result)
        return result

    async def deliver_to_followers(
        self,
        activity: ap.RawObject,
        actor: models.Actor,
    ) -> DeliveryReport:
        """Fans out to the inboxes of the followers at the time of the call."""
        async with self.database.session() as db_session:
            inboxes = await self.followers.list_follower_inboxes(db_session, actor.id)
            key = await self.directory.get_signing_key(db_session, actor)

        logger.info(f"Delivering {activity['type']} to {len(inboxes)} inbox(es)")
        results = await asyncio.gather(
            *[
                self.deliver_with_retries(inbox_url, activity, actor, key)
                for inbox_url in inboxes
            ],
            return_exceptions=True,
        )

        report = DeliveryReport(activity_id=activity["id"])
        for inbox_url, result in zip(inboxes, results):
            if isinstance(result, BaseException):
                logger.opt(exception=result).error(f"Delivery to {inbox_url} crashed")
                result = DeliveryResult(
                    inbox_url=inbox_url,
                    is_success=False,
                    tries=0,
                    error=repr(result),
                )
            report.results.append(result)

        logger.info(
            f"Delivered {activity['id']}: {len(report.successes)} succeeded, "
            f"{len(report.failures)} failed"
        )
        return report

    async def send_accept_follow(
        self,
        follow_activity: ap.RawObject,
        target_actor: models.Actor,
    ) -> DeliveryResult:
        follower_uri = ap.get_id(follow_activity["actor"])
        accept = build_accept_activity(
            self.config.base_url, follow_activity, target_actor
        )
        async with self.database.session() as db_session:
            try:
                follower = await self.directory.resolve_remote_actor(
                    db_session, follower_uri
                )
            except ActorResolutionError as exc:
                logger.warning(f"Cannot send Accept to {follower_uri}: {exc}")
                raise

            await self.outbox.append(db_session, accept, target_actor)

        return await self.deliver_with_retries(
            follower.inbox_url, accept, target_actor  # type: ignore
        )

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Runs a delivery in the background, after the HTTP response is sent."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()):
            logger.opt(exception=exc).error("Background delivery failed")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _record(self, activity: ap.RawObject, result: DeliveryResult) -> None:
        async with self.database.session() as db_session:
            db_session.add(
                models.OutgoingActivity(
                    recipient=result.inbox_url,
                    activity_ap_id=activity["id"],
                    activity_type=activity["type"],
                    tries=result.tries,
                    last_try=now(),
                    last_status_code=result.status_code,
                    is_sent=result.is_success,
                    is_errored=not result.is_success,
                    error=result.error,
                )
            )
            await db_session.commit()
