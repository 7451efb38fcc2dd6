import json
from typing import Any

import httpx
import respx

from tests import factories
from wallog import activitypub as ap
from wallog.actor import RemoteActor
from wallog.httpsig import sign_headers


def setup_remote_actor(
    respx_mock: respx.MockRouter,
    username: str = "bob",
    public_key: str | None = None,
    shared_inbox: str | None = None,
) -> RemoteActor:
    kwargs: dict[str, Any] = {"username": username, "shared_inbox": shared_inbox}
    if public_key:
        kwargs["public_key"] = public_key
    ra = factories.RemoteActorFactory(**kwargs)
    respx_mock.get(ra.ap_id).mock(return_value=httpx.Response(200, json=ra.ap_actor))
    return ra


def signed_post(
    url: str,
    activity: ap.RawObject,
    key_id: str,
    private_key_pem: str | None = None,
) -> tuple[bytes, dict[str, str]]:
    """Returns the body and the signed headers of an inbox delivery."""
    body = json.dumps(activity).encode()
    headers = sign_headers(
        url,
        "POST",
        key_id,
        private_key_pem or factories.default_private_key(),
        body,
    )
    return body, headers
