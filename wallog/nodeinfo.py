from typing import Any

from sqlalchemy import func
from sqlalchemy import select

from wallog import models
from wallog.config import Config
from wallog.database import AsyncSession
from wallog.errors import NotFoundError

SUPPORTED_VERSIONS = ["2.0", "2.1"]


def nodeinfo_content_type(version: str) -> str:
    return (
        "application/json; "
        f'profile="http://nodeinfo.diaspora.software/ns/schema/{version}#"'
    )


def nodeinfo_links(config: Config) -> dict[str, Any]:
    return {
        "links": [
            {
                "rel": f"http://nodeinfo.diaspora.software/ns/schema/{version}",
                "href": f"{config.base_url}/nodeinfo/{version}",
            }
            for version in SUPPORTED_VERSIONS
        ]
    }


async def get_nodeinfo(
    db_session: AsyncSession,
    config: Config,
    version: str,
) -> dict[str, Any]:
    if version not in SUPPORTED_VERSIONS:
        raise NotFoundError(f"Unsupported NodeInfo version {version}")

    local_users = await db_session.scalar(
        select(func.count(models.Actor.id)).where(models.Actor.is_local.is_(True))
    )
    local_posts = await db_session.scalar(
        select(func.count(models.Activity.id)).where(
            models.Activity.direction == models.Direction.OUTBOX,
            models.Activity.ap_type == "Create",
        )
    )

    software: dict[str, Any] = {
        "name": "wallog",
        "version": config.software_version,
    }
    if version == "2.1":
        software["homepage"] = config.base_url

    return {
        "version": version,
        "software": software,
        "protocols": ["activitypub"],
        "services": {"inbound": [], "outbound": []},
        "openRegistrations": False,
        "usage": {
            "users": {
                "total": local_users,
                "activeMonth": local_users,
                "activeHalfyear": local_users,
            },
            "localPosts": local_posts,
        },
        "metadata": {
            "nodeName": config.name,
            "nodeDescription": config.summary,
        },
    }
