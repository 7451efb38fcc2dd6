import re
import typing
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from wallog.errors import MalformedRequestError
from wallog.errors import NotFoundError
from wallog.utils.url import InvalidURLError

if typing.TYPE_CHECKING:
    from wallog.activitypub import ApClient
    from wallog.actor import ActorDirectory
    from wallog.database import AsyncSession

JRD_CONTENT_TYPE = "application/jrd+json; charset=utf-8"

_ACCT_RE = re.compile(r"^acct:([^@\s/]+)@([^@\s/]+)$")


def parse_acct_resource(resource: str | None) -> tuple[str, str]:
    """Parses `acct:user@domain` into `(username, domain)`."""
    if not resource:
        raise MalformedRequestError("Missing resource")

    match = _ACCT_RE.match(resource.strip())
    if not match:
        raise MalformedRequestError(f"Invalid resource {resource!r}")

    username, domain = match.groups()
    return username, domain.lower()


async def handle_webfinger(
    db_session: "AsyncSession",
    directory: "ActorDirectory",
    resource: str | None,
) -> dict[str, Any]:
    """Builds the JRD document for one of the local actors."""
    config = directory.config
    if resource and resource.startswith(config.base_url + "/users/"):
        # The actor URL itself is also accepted as a resource
        username = resource.removeprefix(config.base_url + "/users/")
        domain = config.domain
    else:
        username, domain = parse_acct_resource(resource)

    if domain != config.domain.lower():
        logger.info(f"Refusing webfinger for foreign domain {domain}")
        raise NotFoundError(f"Unknown domain {domain}")

    actor = await directory.get_local_actor(db_session, username)
    return {
        "subject": f"acct:{actor.username}@{config.domain}",
        "aliases": [actor.ap_id, config.profile_page_url(actor.username)],
        "links": [
            {
                "rel": "http://webfinger.net/rel/profile-page",
                "type": "text/html",
                "href": config.profile_page_url(actor.username),
            },
            {
                "rel": "self",
                "type": "application/activity+json",
                "href": actor.ap_id,
            },
        ],
    }


async def webfinger(
    client: "ApClient",
    resource: str,
) -> dict[str, Any] | None:
    """Mastodon-like WebFinger resolution of a remote handle."""
    resource = resource.strip()
    logger.info(f"performing webfinger resolution for {resource}")
    if resource.startswith("acct:"):
        resource = resource[5:]
    if resource.startswith("@"):
        resource = resource[1:]
    if "@" not in resource:
        raise ValueError(f"Invalid handle {resource}")

    _, host = resource.split("@", 1)
    urls = [f"{proto}://{host}/.well-known/webfinger" for proto in ["https", "http"]]
    resource = "acct:" + resource

    resp: httpx.Response | None = None
    for i, url in enumerate(urls):
        try:
            client.check_url(url)
            resp = await client.client.get(
                url,
                params={"resource": resource},
                headers={
                    "User-Agent": client.config.user_agent,
                },
                follow_redirects=True,
            )
            resp.raise_for_status()
            break
        except httpx.HTTPStatusError as http_error:
            logger.info(f"webfinger {url} failed: {http_error}")
            if http_error.response.status_code in [403, 404, 410]:
                return None
            raise
        except (httpx.HTTPError, InvalidURLError):
            logger.exception("req failed")
            resp = None
            # If we tried https first and the domain is "http only"
            if i == 0:
                continue
            break

    if resp:
        return resp.json()
    else:
        return None


async def get_actor_url(client: "ApClient", resource: str) -> str | None:
    """Mastodon-like WebFinger resolution to retrieve the activity stream Actor URL.

    Returns:
        the Actor URL or None if the resolution failed.
    """
    data = await webfinger(client, resource)
    if data is None:
        return None
    for link in data.get("links", []):
        if (
            link.get("rel") == "self"
            and link.get("type") == "application/activity+json"
            and urlparse(link.get("href", "")).scheme in ["http", "https"]
        ):
            return link.get("href")
    return None
