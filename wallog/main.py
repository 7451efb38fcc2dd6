import math
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Any
from typing import AsyncIterator

import fastapi
from asgiref.typing import ASGI3Application
from asgiref.typing import ASGIReceiveCallable
from asgiref.typing import ASGISendCallable
from asgiref.typing import Scope
from fastapi import APIRouter
from fastapi import Depends
from fastapi import FastAPI
from fastapi import Request
from fastapi import Response
from fastapi.responses import RedirectResponse
from loguru import logger
from starlette.datastructures import Headers
from starlette.datastructures import MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import Message
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware  # type: ignore

from wallog import activitypub as ap
from wallog import httpsig
from wallog import models
from wallog.actor import build_actor_document
from wallog.config import Config
from wallog.config import is_activitypub_requested
from wallog.config import load_config
from wallog.database import AsyncSession
from wallog.database import get_db_session
from wallog.errors import FederationError
from wallog.errors import NotFoundError
from wallog.federation import Federation
from wallog.nodeinfo import get_nodeinfo
from wallog.nodeinfo import nodeinfo_content_type
from wallog.nodeinfo import nodeinfo_links
from wallog.outbox import activity_url
from wallog.outbox import object_url
from wallog.webfinger import JRD_CONTENT_TYPE
from wallog.webfinger import handle_webfinger

class CustomMiddleware:
    """Tags every request with an ID (response header and log context) and logs
    its outcome. Raw ASGI: https://github.com/tiangolo/fastapi/issues/4719
    """

    def __init__(
        self,
        app: ASGI3Application,
    ) -> None:
        self.app = app

    async def __call__(
        self, scope: Scope, receive: ASGIReceiveCallable, send: ASGISendCallable
    ) -> None:
        # We only care about HTTP requests
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_details = {"status_code": None}
        start_time = time.perf_counter()
        request_id = os.urandom(8).hex()

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":

                # Extract the HTTP response status code
                response_details["status_code"] = message["status"]

                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id
                headers["x-powered-by"] = "wallog"
                headers["x-content-type-options"] = "nosniff"

            await send(message)  # type: ignore

        # Make loguru ouput the request ID on every log statement within
        # the request
        with logger.contextualize(request_id=request_id):
            client_host, client_port = scope["client"] or ("-", 0)  # type: ignore
            request_method = scope["method"]
            request_path = scope["path"]
            headers = Headers(raw=scope["headers"])  # type: ignore
            user_agent = headers.get("user-agent")
            logger.info(
                f"{client_host}:{client_port} - "
                f"{request_method} {request_path} - "
                f'"{user_agent}"'
            )
            try:
                await self.app(scope, receive, send_wrapper)  # type: ignore
            finally:
                elapsed_time = time.perf_counter() - start_time
                logger.info(
                    f"status_code={response_details['status_code']} "
                    f"{elapsed_time=:.2f}s"
                )

        return None


class ActivityPubResponse(JSONResponse):
    media_type = "application/activity+json"


def configure_logging(debug: bool) -> None:
    logger.configure(extra={"request_id": "no_req_id"})
    logger.remove()
    logger_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "{extra[request_id]} - <level>{message}</level>"
    )
    logger.add(sys.stdout, format=logger_format, level="DEBUG" if debug else "INFO")


def get_federation(request: Request) -> Federation:
    return request.app.state.federation


router = APIRouter()


@router.get("/.well-known/webfinger")
async def wellknown_webfinger(
    resource: str | None = None,
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> JSONResponse:
    """Exposes/servers WebFinger data."""
    out = await handle_webfinger(db_session, federation.directory, resource)
    return JSONResponse(
        out,
        media_type=JRD_CONTENT_TYPE,
        headers={"Access-Control-Allow-Origin": "*"},
    )


@router.get("/.well-known/nodeinfo")
async def well_known_nodeinfo(
    federation: Federation = Depends(get_federation),
) -> dict[str, Any]:
    return nodeinfo_links(federation.config)


@router.get("/nodeinfo/{version}")
async def nodeinfo(
    version: str,
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> JSONResponse:
    return JSONResponse(
        await get_nodeinfo(db_session, federation.config, version),
        media_type=nodeinfo_content_type(version),
        headers={"Access-Control-Allow-Origin": "*"},
    )


@router.get("/users/{username}")
async def actor_profile(
    username: str,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> Response:
    actor = await federation.directory.get_local_actor(db_session, username)
    if not is_activitypub_requested(request):
        return RedirectResponse(
            federation.config.profile_page_url(actor.username), status_code=302
        )

    return ActivityPubResponse(build_actor_document(federation.config, actor))


def _page_links(path: str, page: int, total_items: int, limit: int) -> dict[str, str]:
    links = {}
    if page > 1:
        links["prev"] = f"{path}?page={page - 1}"
    if page * limit < total_items:
        links["next"] = f"{path}?page={page + 1}"
    return links


def _collection(
    path: str,
    total_items: int,
    limit: int,
    ordered: bool,
) -> ap.RawObject:
    last_page = max(math.ceil(total_items / limit), 1)
    return {
        "@context": ap.AS_CTX,
        "id": path,
        "type": "OrderedCollection" if ordered else "Collection",
        "totalItems": total_items,
        "first": f"{path}?page=1",
        "last": f"{path}?page={last_page}",
    }


def _collection_page(
    path: str,
    page: int,
    total_items: int,
    limit: int,
    items: list[Any],
    ordered: bool,
) -> ap.RawObject:
    return {
        "@context": ap.AS_CTX,
        "id": f"{path}?page={page}",
        "type": "OrderedCollectionPage" if ordered else "CollectionPage",
        "partOf": path,
        "totalItems": total_items,
        "orderedItems" if ordered else "items": items,
        **_page_links(path, page, total_items, limit),
    }


@router.get("/users/{username}/followers")
async def followers(
    username: str,
    page: int | None = fastapi.Query(None, ge=1),
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> ActivityPubResponse:
    actor = await federation.directory.get_local_actor(db_session, username)
    limit = federation.config.followers_page_size
    total_items = await federation.followers.count_followers(db_session, actor.id)
    path = actor.followers_url
    if page is None:
        return ActivityPubResponse(_collection(path, total_items, limit, False))

    edges = await federation.followers.page(db_session, actor.id, page, limit)
    return ActivityPubResponse(
        _collection_page(
            path,
            page,
            total_items,
            limit,
            [edge.follower_ap_id for edge in edges],
            False,
        )
    )


@router.get("/users/{username}/following")
async def following(
    username: str,
    page: int | None = fastapi.Query(None, ge=1),
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> ActivityPubResponse:
    # Local actors do not follow anyone
    actor = await federation.directory.get_local_actor(db_session, username)
    limit = federation.config.followers_page_size
    path = actor.following_url
    if page is None:
        return ActivityPubResponse(_collection(path, 0, limit, False))

    return ActivityPubResponse(_collection_page(path, page, 0, limit, [], False))


@router.get("/users/{username}/outbox")
async def outbox(
    username: str,
    page: int | None = fastapi.Query(None, ge=1),
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> ActivityPubResponse:
    actor = await federation.directory.get_local_actor(db_session, username)
    limit = federation.config.outbox_page_size
    total_items = await federation.outbox.count(db_session, actor.id)
    path = actor.outbox_url
    if page is None:
        return ActivityPubResponse(_collection(path, total_items, limit, True))

    activities = await federation.outbox.page(db_session, actor.id, page, limit)
    return ActivityPubResponse(
        _collection_page(
            path,
            page,
            total_items,
            limit,
            [ap.remove_context(activity.ap_object) for activity in activities],
            True,
        )
    )


@router.get("/objects/{object_id}")
async def outbox_object(
    object_id: str,
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> ActivityPubResponse:
    object_ap_id = object_url(federation.config.base_url, object_id)
    published = await federation.outbox.get_object(db_session, object_ap_id)
    if not published:
        raise NotFoundError(f"Unknown object {object_ap_id}")

    ap_object, is_deleted = published
    if is_deleted:
        return ActivityPubResponse(
            {"@context": ap.AS_CTX, "type": "Tombstone", "id": object_ap_id},
            status_code=410,
        )

    return ActivityPubResponse({"@context": ap.AS_EXTENDED_CTX, **ap_object})


@router.get("/activities/{activity_id}")
async def outbox_activity(
    activity_id: str,
    db_session: AsyncSession = Depends(get_db_session),
    federation: Federation = Depends(get_federation),
) -> ActivityPubResponse:
    activity_ap_id = activity_url(federation.config.base_url, activity_id)
    activity = await federation.outbox.get_by_ap_id(
        db_session, activity_ap_id, models.Direction.OUTBOX
    )
    if not activity:
        raise NotFoundError(f"Unknown activity {activity_ap_id}")

    return ActivityPubResponse(activity.ap_object)


@router.post("/inbox")
async def shared_inbox(
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    httpsig_info: httpsig.HTTPSigInfo = Depends(httpsig.enforce_httpsig),
    federation: Federation = Depends(get_federation),
) -> Response:
    body = await httpsig.read_body(request)
    await federation.inbox.process(db_session, body, httpsig_info)
    return Response(status_code=202)


@router.post("/users/{username}/inbox")
async def user_inbox(
    username: str,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    httpsig_info: httpsig.HTTPSigInfo = Depends(httpsig.enforce_httpsig),
    federation: Federation = Depends(get_federation),
) -> Response:
    body = await httpsig.read_body(request)
    await federation.inbox.process(db_session, body, httpsig_info, username)
    return Response(status_code=202)


async def federation_error_handler(
    request: Request,
    exc: FederationError,
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.opt(exception=exc).error(f"{request.method} {request.url.path}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    logger.info(f"{request.method} {request.url.path}: {exc.status_code} {exc}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error(
        f"Unhandled error on {request.method} {request.url.path}"
    )
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def create_app(
    config: Config | None = None,
    federation: Federation | None = None,
) -> FastAPI:
    """ASGI factory: `uvicorn --factory wallog.main:create_app`."""
    config = config or load_config()
    federation = federation or Federation(config)
    configure_logging(config.debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await federation.startup()
        try:
            yield
        finally:
            await federation.shutdown()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.federation = federation
    app.include_router(router)
    app.add_exception_handler(FederationError, federation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # XXX: order matters, the proxy middleware needs to be last
    app.add_middleware(CustomMiddleware)
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=config.trusted_hosts)
    return app
