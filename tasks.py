import asyncio
import json
import uuid
from typing import Optional

from invoke import Context  # type: ignore
from invoke import run  # type: ignore
from invoke import task  # type: ignore


@task
def autoformat(ctx):
    # type: (Context) -> None
    run("black .", echo=True)
    run("isort -sl .", echo=True)


@task
def lint(ctx):
    # type: (Context) -> None
    run("black --check .", echo=True)
    run("isort -sl --check-only .", echo=True)
    run("flake8 .", echo=True)
    run("mypy .", echo=True)


@task
def uvicorn(ctx):
    # type: (Context) -> None
    run(
        "uvicorn --factory wallog.main:create_app --no-server-header",
        pty=True,
        echo=True,
    )


@task
def tests(ctx, k=None):
    # type: (Context, Optional[str]) -> None
    pytest_args = " -vvv"
    if k:
        pytest_args += f" -k {k}"
    run(f"pytest tests{pytest_args}", pty=True, echo=True)


@task
def init(ctx):
    # type: (Context) -> None
    """Creates the tables and the local actor described by the profile."""
    from wallog.config import load_config
    from wallog.federation import Federation

    async def _init() -> None:
        federation = Federation(load_config())
        await federation.startup()
        await federation.shutdown()

    asyncio.run(_init())


@task
def rotate_key(ctx, username=None):
    # type: (Context, Optional[str]) -> None
    """Rotates the key of a local actor and sends an Update to its followers."""
    from wallog.config import load_config
    from wallog.federation import Federation

    async def _rotate_key() -> None:
        config = load_config()
        federation = Federation(config)
        await federation.startup()
        try:
            async with federation.database.session() as db_session:
                actor = await federation.directory.get_local_actor(
                    db_session, username or config.username
                )
                key = await federation.rotate_key(db_session, actor)
                print(f"New key for {key.key_id}")
        finally:
            await federation.shutdown()

    asyncio.run(_rotate_key())


@task
def publish(ctx, content, title=None, tags=""):
    # type: (Context, str, Optional[str], str) -> None
    """Announces a new post to the followers of the default actor."""
    from wallog.config import load_config
    from wallog.events import ContentPublished
    from wallog.federation import Federation

    async def _publish() -> None:
        federation = Federation(load_config())
        await federation.startup()
        try:
            await federation.events.publish(
                ContentPublished(
                    local_post_id=uuid.uuid4().hex,
                    content=content,
                    title=title,
                    tags=[tag for tag in tags.split(",") if tag],
                )
            )
        finally:
            # Waits for the deliveries
            await federation.shutdown()

    asyncio.run(_publish())


@task
def webfinger(ctx, handle):
    # type: (Context, str) -> None
    """Resolves a remote handle and prints its actor document."""
    from wallog.config import load_config
    from wallog.federation import Federation

    async def _webfinger() -> None:
        federation = Federation(load_config())
        await federation.startup()
        try:
            username, domain = handle.lstrip("@").split("@", 1)
            async with federation.database.session() as db_session:
                actor = await federation.directory.resolve_by_handle(
                    db_session, username, domain
                )
                print(json.dumps(actor.ap_actor, indent=2))
        finally:
            await federation.shutdown()

    asyncio.run(_webfinger())
