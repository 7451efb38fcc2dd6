import os
from pathlib import Path

import pydantic
import tomli
from fastapi import Request
from loguru import logger

ROOT_DIR = Path().parent.resolve()

_CONFIG_FILE = os.getenv("WALLOG_CONFIG_FILE", "profile.toml")

VERSION = "1.0.0"
AP_CONTENT_TYPE = "application/activity+json"


class _BlockedServer(pydantic.BaseModel):
    hostname: str
    reason: str | None = None


class DeliveryConfig(pydantic.BaseModel):
    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    concurrency: int = 10
    timeout_seconds: float = 15.0


class Config(pydantic.BaseModel):
    domain: str
    username: str
    name: str
    summary: str = ""
    https: bool = True
    icon_url: str | None = None
    # Human-facing profile page, `{username}` and `{base_url}` are substituted
    profile_url: str = "{base_url}/"
    debug: bool = False
    trusted_hosts: list[str] = ["127.0.0.1"]
    blocked_servers: list[_BlockedServer] = []

    key_size: int = 2048
    signature_clock_skew_seconds: int = 300
    remote_actor_ttl_hours: int = 24
    rotated_key_grace_hours: int = 48
    http_timeout_seconds: float = 10.0

    followers_page_size: int = 50
    outbox_page_size: int = 20

    delivery: DeliveryConfig = DeliveryConfig()

    software_version: str = VERSION

    # Config items to make tests easier
    sqlalchemy_database: str | None = None

    @property
    def base_url(self) -> str:
        scheme = "https" if self.https else "http"
        return f"{scheme}://{self.domain}"

    @property
    def user_agent(self) -> str:
        return f"wallog/{self.software_version} (+{self.base_url})"

    @property
    def database_path(self) -> Path:
        return Path(self.sqlalchemy_database or ROOT_DIR / "data" / "wallog.db")

    @property
    def blocked_hostnames(self) -> set[str]:
        return {blocked.hostname for blocked in self.blocked_servers}

    def actor_url(self, username: str) -> str:
        return f"{self.base_url}/users/{username}"

    def profile_page_url(self, username: str) -> str:
        return self.profile_url.format(base_url=self.base_url, username=username)


def load_config(path: Path | None = None) -> Config:
    config_path = path or ROOT_DIR / "data" / _CONFIG_FILE
    try:
        config = Config.model_validate(tomli.loads(config_path.read_text()))
    except FileNotFoundError:
        raise ValueError(f"Please create the profile, {config_path} is missing")

    logger.info(f"Loaded config for {config.username}@{config.domain}")
    return config


def is_activitypub_requested(req: Request) -> bool:
    accept_value = req.headers.get("accept")
    if not accept_value:
        return False
    for val in {
        "application/ld+json",
        "application/activity+json",
    }:
        if accept_value.startswith(val):
            return True

    return False
