import enum

from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import relationship

from wallog import activitypub as ap
from wallog.database import Base
from wallog.utils.datetime import as_utc
from wallog.utils.datetime import now


class Actor(Base):
    __tablename__ = "actor"
    __table_args__ = (
        UniqueConstraint("username", "domain", name="uix_actor_username_domain"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now)

    ap_id: Mapped[str] = Column(String, unique=True, nullable=False, index=True)
    ap_actor: Mapped[ap.RawObject] = Column(JSON, nullable=False)
    ap_type = Column(String, nullable=False, default="Person")

    username = Column(String, nullable=False)
    domain = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    summary = Column(String, nullable=True)
    icon_url = Column(String, nullable=True)

    inbox_url = Column(String, nullable=False)
    shared_inbox_url = Column(String, nullable=True)
    outbox_url = Column(String, nullable=True)
    followers_url = Column(String, nullable=True)
    following_url = Column(String, nullable=True)

    public_key_id = Column(String, nullable=True)
    public_key_pem = Column(String, nullable=True)
    # Only set for local actors
    private_key_pem = Column(String, nullable=True)

    is_local = Column(Boolean, nullable=False, default=False)
    # Last time the remote document was fetched
    fetched_at = Column(DateTime(timezone=True), nullable=True)

    keys: Mapped[list["Key"]] = relationship("Key", back_populates="actor")

    @property
    def handle(self) -> str:
        return f"@{self.username}@{self.domain}"

    def is_stale(self, ttl_hours: int) -> bool:
        if self.is_local:
            return False
        if self.fetched_at is None:
            return True
        return (now() - as_utc(self.fetched_at)).total_seconds() > ttl_hours * 3600


class Key(Base):
    __tablename__ = "key"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    key_id = Column(String, nullable=False, index=True)
    actor_id = Column(Integer, ForeignKey("actor.id"), nullable=False)
    actor: Mapped[Actor] = relationship(Actor, back_populates="keys")

    public_key_pem = Column(String, nullable=False)
    private_key_pem = Column(String, nullable=True)
    algorithm = Column(String, nullable=False, default="rsa-sha256")

    is_active = Column(Boolean, nullable=False, default=True)
    is_revoked = Column(Boolean, nullable=False, default=False)

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and as_utc(self.expires_at) <= now()


class Follower(Base):
    __tablename__ = "follower"
    __table_args__ = (
        UniqueConstraint(
            "target_actor_id", "follower_ap_id", name="uix_follower_target_follower"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    target_actor_id = Column(Integer, ForeignKey("actor.id"), nullable=False)
    target_actor: Mapped[Actor] = relationship(Actor, uselist=False)

    follower_ap_id = Column(String, nullable=False, index=True)
    follower_username = Column(String, nullable=True)
    follower_domain = Column(String, nullable=True)
    follower_inbox_url = Column(String, nullable=False)
    follower_shared_inbox_url = Column(String, nullable=True)

    source_activity_ap_id = Column(String, nullable=True, index=True)


class Direction(str, enum.Enum):
    INBOX = "inbox"
    OUTBOX = "outbox"


class Activity(Base):
    __tablename__ = "activity"
    __table_args__ = (
        UniqueConstraint("direction", "ap_id", name="uix_activity_direction_ap_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    direction = Column(Enum(Direction), nullable=False)
    ap_id: Mapped[str] = Column(String, nullable=False, index=True)
    ap_type = Column(String, nullable=False)
    ap_actor_id = Column(String, nullable=False)
    # Local actor for outbox entries, target local actor for inbox entries
    actor_id = Column(Integer, ForeignKey("actor.id"), nullable=True)
    actor: Mapped[Actor | None] = relationship(Actor, uselist=False)

    activity_object_ap_id = Column(String, nullable=True, index=True)
    ap_published_at = Column(DateTime(timezone=True), nullable=False, default=now)
    ap_object: Mapped[ap.RawObject] = Column(JSON, nullable=False)

    # Identifier of the local content that produced the activity
    local_post_id = Column(String, nullable=True, index=True)


class OutgoingActivity(Base):
    __tablename__ = "outgoing_activity"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    recipient = Column(String, nullable=False)
    activity_ap_id = Column(String, nullable=False, index=True)
    activity_type = Column(String, nullable=False)

    tries = Column(Integer, nullable=False, default=0)
    last_try = Column(DateTime(timezone=True), nullable=True)
    last_status_code = Column(Integer, nullable=True)

    is_sent = Column(Boolean, nullable=False, default=False)
    is_errored = Column(Boolean, nullable=False, default=False)
    error = Column(String, nullable=True)
