import base64
import hashlib
import json
import re
import typing
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Mapping
from urllib.parse import urlparse

import fastapi
import httpx
from dateutil.parser import parse
from loguru import logger

from wallog import activitypub as ap
from wallog import models
from wallog.actor import ActorDirectory
from wallog.config import AP_CONTENT_TYPE
from wallog.config import Config
from wallog.database import AsyncSession
from wallog.database import get_db_session
from wallog.errors import ActorResolutionError
from wallog.errors import ForbiddenError
from wallog.errors import PayloadTooLargeError
from wallog.errors import UnauthorizedError
from wallog.key import CryptoError
from wallog.key import sign
from wallog.key import verify
from wallog.utils.datetime import format_http_date
from wallog.utils.datetime import now
from wallog.utils.url import is_hostname_blocked

MAX_BODY_SIZE = 1024 * 1024

_SUPPORTED_ALGORITHMS = ["rsa-sha256", "hs2019"]
_REQUIRED_SIGNED_HEADERS = ["(request-target)", "host", "date"]
_SIG_PARAM_RE = re.compile(r'\s*([a-zA-Z]+)\s*=\s*"([^"]*)"\s*(?:,|$)')


def _build_signed_string(
    signed_headers: list[str],
    method: str,
    path: str,
    headers: Mapping[str, str],
    body_digest: str | None,
) -> str:
    out = []
    for signed_header in signed_headers:
        if signed_header == "(request-target)":
            out.append("(request-target): " + method.lower() + " " + path)
        elif signed_header == "digest" and body_digest:
            out.append("digest: " + body_digest)
        else:
            value = headers.get(signed_header)
            if value is None:
                raise KeyError(signed_header)
            out.append(signed_header + ": " + value)
    return "\n".join(out)


def _parse_sig_header(val: str | None) -> dict[str, str] | None:
    if not val:
        return None

    out = {}
    pos = 0
    while pos < len(val):
        match = _SIG_PARAM_RE.match(val, pos)
        if not match:
            return None
        out[match.group(1)] = match.group(2)
        pos = match.end()
    return out


def _body_digest(body: bytes) -> str:
    h = hashlib.new("sha256")
    h.update(body)
    return "SHA-256=" + base64.b64encode(h.digest()).decode("utf-8")


def _request_target(url: httpx.URL | str) -> str:
    parsed = urlparse(str(url))
    path = parsed.path or "/"
    if parsed.query:
        path += "?" + parsed.query
    return path


def sign_headers(
    target_url: str,
    method: str,
    key_id: str,
    private_key_pem: str,
    body: bytes | None = None,
    date: datetime | None = None,
) -> dict[str, str]:
    """Returns the headers of a signed request, `Digest` only when there is a body."""
    parsed = urlparse(target_url)
    headers = {
        "host": parsed.netloc,
        "date": format_http_date(date or now()),
    }
    signed_headers = ["(request-target)", "host", "date"]
    body_digest = None
    if body:
        body_digest = _body_digest(body)
        headers["digest"] = body_digest
        signed_headers.append("digest")

    to_be_signed = _build_signed_string(
        signed_headers,
        method,
        _request_target(target_url),
        headers,
        body_digest,
    )
    signature = sign(to_be_signed.encode("utf-8"), private_key_pem)
    sig_value = (
        f'keyId="{key_id}",algorithm="rsa-sha256",'
        f'headers="{" ".join(signed_headers)}",signature="{signature}"'
    )
    logger.debug(f"signed request {sig_value=}")

    out = {
        "Host": headers["host"],
        "Date": headers["date"],
        "Signature": sig_value,
        "Accept": AP_CONTENT_TYPE,
    }
    if body_digest:
        out["Digest"] = body_digest
        out["Content-Type"] = AP_CONTENT_TYPE
    return out


@dataclass(frozen=True)
class HTTPSigInfo:
    has_valid_signature: bool
    signed_by_ap_actor_id: str | None = None
    key_id: str | None = None

    is_unsupported_algorithm: bool = False
    is_expired: bool = False
    is_from_blocked_server: bool = False

    server: str | None = None


class SignatureService:
    """Signs outgoing requests and verifies incoming ones (HTTP Signatures)."""

    def __init__(self, config: Config, directory: ActorDirectory) -> None:
        self.config = config
        self.directory = directory

    async def create_signed_headers(
        self,
        db_session: AsyncSession,
        target_url: str,
        method: str,
        actor: models.Actor,
        body: bytes | None = None,
    ) -> dict[str, str]:
        key = await self.directory.get_signing_key(db_session, actor)
        return self.sign_request(target_url, method, key, body)

    def sign_request(
        self,
        target_url: str,
        method: str,
        key: models.Key,
        body: bytes | None = None,
    ) -> dict[str, str]:
        if not key.private_key_pem:
            raise CryptoError(f"No private key for {key.key_id}")

        return sign_headers(target_url, method, key.key_id, key.private_key_pem, body)

    async def verify_incoming(
        self,
        db_session: AsyncSession,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> HTTPSigInfo:
        """Verifies the HTTP signature of a request, fails closed."""
        headers = {k.lower(): v for k, v in headers.items()}
        hsig = _parse_sig_header(headers.get("signature"))
        if not hsig:
            logger.info("No HTTP signature found")
            return HTTPSigInfo(has_valid_signature=False)

        key_id = hsig.get("keyId")
        signature = hsig.get("signature")
        signed_headers = (hsig.get("headers") or "").lower().split()
        if not key_id or not signature or not signed_headers:
            logger.info(f"Incomplete signature header {hsig=}")
            return HTTPSigInfo(has_valid_signature=False)

        server = urlparse(key_id).hostname
        if server and is_hostname_blocked(
            server, frozenset(self.config.blocked_hostnames)
        ):
            return HTTPSigInfo(
                has_valid_signature=False,
                server=server,
                is_from_blocked_server=True,
            )

        if (alg := hsig.get("algorithm")) and alg not in _SUPPORTED_ALGORITHMS:
            logger.info(f"Unsupported HTTP sig algorithm: {alg}")
            return HTTPSigInfo(
                has_valid_signature=False,
                is_unsupported_algorithm=True,
                server=server,
            )

        required = list(_REQUIRED_SIGNED_HEADERS)
        if body:
            required.append("digest")
        if missing := [h for h in required if h not in signed_headers]:
            logger.info(f"Signature does not cover {missing}")
            return HTTPSigInfo(has_valid_signature=False, server=server)

        if body and headers.get("digest") != _body_digest(body):
            logger.info("Digest header does not match the body")
            return HTTPSigInfo(has_valid_signature=False, server=server)

        if not self._is_date_valid(headers.get("date")):
            return HTTPSigInfo(has_valid_signature=False, is_expired=True, server=server)

        claimed_actor_id = _get_claimed_actor_id(body)
        if claimed_actor_id and urlparse(claimed_actor_id).hostname != server:
            logger.warning(f"keyId {key_id} does not match actor {claimed_actor_id}")
            return HTTPSigInfo(has_valid_signature=False, server=server)

        try:
            signed_string = _build_signed_string(
                signed_headers,
                method,
                _request_target(url),
                headers,
                _body_digest(body) if body else None,
            )
        except KeyError as exc:
            logger.info(f"Signed header {exc} is missing from the request")
            return HTTPSigInfo(has_valid_signature=False, server=server)

        key = await self._verify_with_known_keys(
            db_session, key_id, signed_string, signature
        )
        if key is None:
            logger.info(f"Trying to refresh the key {key_id}")
            key = await self._verify_with_refreshed_keys(
                db_session, key_id, signed_string, signature
            )

        if key is None:
            return HTTPSigInfo(has_valid_signature=False, key_id=key_id, server=server)

        httpsig_info = HTTPSigInfo(
            has_valid_signature=True,
            signed_by_ap_actor_id=key.actor.ap_id,
            key_id=key_id,
            server=server,
        )
        logger.info(f"Valid HTTP signature for {httpsig_info.signed_by_ap_actor_id}")
        return httpsig_info

    def _is_date_valid(self, date_header: str | None) -> bool:
        if not date_header:
            logger.info("Missing Date header")
            return False
        try:
            signature_date = parse(date_header)
        except (ValueError, OverflowError):
            logger.info(f"Invalid Date header {date_header!r}")
            return False

        if signature_date.tzinfo is None:
            signature_date = signature_date.replace(tzinfo=timezone.utc)

        skew = abs(now() - signature_date)
        if skew > timedelta(seconds=self.config.signature_clock_skew_seconds):
            logger.info(f"Signature date out of the tolerance window: {date_header}")
            return False

        return True

    async def _verify_with_known_keys(
        self,
        db_session: AsyncSession,
        key_id: str,
        signed_string: str,
        signature: str,
    ) -> models.Key | None:
        keys = await self.directory.get_verification_keys(db_session, key_id)
        for key in keys:
            try:
                if verify(signed_string.encode("utf-8"), signature, key.public_key_pem):
                    return key
            except CryptoError:
                logger.exception(f"Failed to verify signature with {key_id}")
                continue
        return None

    async def _verify_with_refreshed_keys(
        self,
        db_session: AsyncSession,
        key_id: str,
        signed_string: str,
        signature: str,
    ) -> models.Key | None:
        actor_uri = key_id.split("#")[0]
        try:
            actor = await self.directory.refresh_remote_actor(db_session, actor_uri)
        except ActorResolutionError:
            logger.exception(f"Failed to fetch HTTP sig key {key_id}")
            return None

        if actor.is_local:
            return None

        return await self._verify_with_known_keys(
            db_session, key_id, signed_string, signature
        )


def _get_claimed_actor_id(body: bytes) -> str | None:
    if not body:
        return None
    try:
        activity = json.loads(body)
        return ap.get_id(activity["actor"])
    except (ValueError, KeyError, TypeError):
        # Malformed payloads are rejected by the inbox itself
        return None


async def read_body(request: fastapi.Request) -> bytes:
    """Reads the request body, refusing anything over MAX_BODY_SIZE."""
    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > MAX_BODY_SIZE:
        raise PayloadTooLargeError()

    body = await request.body()
    if len(body) > MAX_BODY_SIZE:
        raise PayloadTooLargeError()
    return body


async def httpsig_checker(
    request: fastapi.Request,
    db_session: AsyncSession = fastapi.Depends(get_db_session),
) -> HTTPSigInfo:
    signature_service: SignatureService = request.app.state.federation.signatures
    body = await read_body(request)
    return await signature_service.verify_incoming(
        db_session,
        request.method,
        str(request.url),
        request.headers,
        body,
    )


async def enforce_httpsig(
    request: fastapi.Request,
    httpsig_info: HTTPSigInfo = fastapi.Depends(httpsig_checker),
) -> HTTPSigInfo:
    """FastAPI Depends"""
    if httpsig_info.is_from_blocked_server:
        logger.warning(f"{httpsig_info.server} is blocked")
        raise ForbiddenError()

    if not httpsig_info.has_valid_signature:
        logger.warning(f"Invalid HTTP sig {httpsig_info=}")
        detail = "Invalid HTTP sig"
        if httpsig_info.is_unsupported_algorithm:
            detail = "Unsupported signature algorithm, must be rsa-sha256 or hs2019"
        elif httpsig_info.is_expired:
            detail = "Signature expired"

        raise UnauthorizedError(detail)

    return httpsig_info


class HTTPXSigAuth(httpx.Auth):
    """Signs requests made with httpx, used for authorized fetch."""

    def __init__(self, signature_service: SignatureService, key: models.Key) -> None:
        self.signature_service = signature_service
        self.key = key

    def auth_flow(
        self, r: httpx.Request
    ) -> typing.Generator[httpx.Request, httpx.Response, None]:
        logger.info(f"keyid={self.key.key_id}")
        signed_headers = self.signature_service.sign_request(
            str(r.url),
            r.method,
            self.key,
            r.content or None,
        )
        for name, value in signed_headers.items():
            if name == "Accept" and "Accept" in r.headers:
                continue
            r.headers[name] = value
        yield r
