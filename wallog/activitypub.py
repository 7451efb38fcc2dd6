import json
from typing import Any

import httpx
from loguru import logger

from wallog.config import AP_CONTENT_TYPE
from wallog.config import Config
from wallog.utils.url import check_url

RawObject = dict[str, Any]
AS_CTX = "https://www.w3.org/ns/activitystreams"
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
SECURITY_CTX = "https://w3id.org/security/v1"

ACTOR_TYPES = ["Application", "Group", "Organization", "Person", "Service"]

AS_EXTENDED_CTX = [
    AS_CTX,
    SECURITY_CTX,
    {
        "Hashtag": "as:Hashtag",
        "sensitive": "as:sensitive",
        "manuallyApprovesFollowers": "as:manuallyApprovesFollowers",
    },
]


class FetchError(Exception):
    def __init__(self, url: str, resp: httpx.Response | None = None) -> None:
        resp_part = ""
        if resp:
            resp_part = f", got HTTP {resp.status_code}: {resp.text[:200]}"
        message = f"Failed to fetch {url}{resp_part}"
        super().__init__(message)
        self.resp = resp
        self.url = url


class ObjectIsGoneError(FetchError):
    pass


class ObjectNotFoundError(FetchError):
    pass


class ObjectUnavailableError(FetchError):
    pass


class NotAnObjectError(Exception):
    def __init__(self, url: str, resp: httpx.Response | None = None) -> None:
        message = f"{url} is not an AP activity"
        super().__init__(message)
        self.url = url
        self.resp = resp


class ApClient:
    """Outbound HTTP for the federation layer.

    A single `httpx.AsyncClient` is shared by every service; it is created at
    startup and closed by `aclose()` on shutdown.
    """

    def __init__(
        self,
        config: Config,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.client = client or httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            headers={"User-Agent": config.user_agent},
        )
        # Set once the signature service exists, used for authorized fetch
        self.auth: httpx.Auth | None = None

    def check_url(self, url: str) -> None:
        check_url(
            url,
            allow_private=self.config.debug,
            blocked_servers=frozenset(self.config.blocked_hostnames),
        )

    async def fetch(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        disable_httpsig: bool = False,
    ) -> RawObject:
        logger.info(f"Fetching {url} ({params=})")
        self.check_url(url)
        auth = None if disable_httpsig else self.auth
        resp = await self.client.get(
            url,
            headers={
                "User-Agent": self.config.user_agent,
                "Accept": AP_CONTENT_TYPE,
            },
            params=params,
            follow_redirects=True,
            auth=auth or httpx.USE_CLIENT_DEFAULT,
        )

        # Special handling for deleted object
        if resp.status_code == 410:
            raise ObjectIsGoneError(url, resp)
        elif resp.status_code in [401, 403]:
            raise ObjectUnavailableError(url, resp)
        elif resp.status_code == 404:
            raise ObjectNotFoundError(url, resp)

        try:
            resp.raise_for_status()
        except httpx.HTTPError as http_error:
            raise FetchError(url, resp) from http_error

        try:
            return resp.json()
        except json.JSONDecodeError:
            raise NotAnObjectError(url, resp)

    async def post(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
        timeout: float | None = None,
    ) -> httpx.Response:
        self.check_url(url)
        return await self.client.post(
            url,
            content=body,
            headers=headers,
            timeout=timeout or httpx.USE_CLIENT_DEFAULT,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def as_list(val: Any | list[Any]) -> list[Any]:
    if isinstance(val, list):
        return val

    return [val]


def get_id(val: str | dict[str, Any]) -> str:
    if isinstance(val, dict):
        val = val["id"]

    if not isinstance(val, str):
        raise ValueError(f"Invalid ID type: {val}")

    return val


def get_object_id(activity: RawObject) -> str:
    if "object" not in activity:
        raise ValueError(f"No object in {activity}")

    return get_id(activity["object"])


def remove_context(raw_object: RawObject) -> RawObject:
    if "@context" not in raw_object:
        return raw_object
    a = dict(raw_object)
    del a["@context"]
    return a


def dumps(raw_object: RawObject) -> bytes:
    return json.dumps(raw_object).encode("utf-8")
