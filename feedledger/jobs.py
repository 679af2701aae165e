"""
Sync job kinds and payloads.

Every job kind has one payload dataclass and is routed to one topic. Jobs
that touch the same record share a partition key, so Kafka delivers them to
the same partition in submission order (like before unlike, request before
accept).

Wire format (JSON):
  { "kind": "sync-like", "payload": {...}, "attempts": 0, "job_id": "..." }
"""
import enum
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional, Union


class JobKind(str, enum.Enum):
    SYNC_LIKE = "sync-like"
    SYNC_UNLIKE = "sync-unlike"
    SYNC_FOLLOW = "sync-follow"
    SYNC_UNFOLLOW = "sync-unfollow"
    SYNC_SHARE = "sync-share"
    SYNC_UNSHARE = "sync-unshare"
    SYNC_COMMENT = "sync-comment"
    UPDATE_FEED = "update-feed"
    SEND_NOTIFICATION = "send-notification"


class Topic(str, enum.Enum):
    LIKES = "likes"
    FOLLOWS = "follows"
    SHARES = "shares"
    COMMENTS = "comments"
    FEED = "feed"
    NOTIFICATIONS = "notifications"


TOPIC_FOR_KIND: dict[JobKind, Topic] = {
    JobKind.SYNC_LIKE: Topic.LIKES,
    JobKind.SYNC_UNLIKE: Topic.LIKES,
    JobKind.SYNC_FOLLOW: Topic.FOLLOWS,
    JobKind.SYNC_UNFOLLOW: Topic.FOLLOWS,
    JobKind.SYNC_SHARE: Topic.SHARES,
    JobKind.SYNC_UNSHARE: Topic.SHARES,
    JobKind.SYNC_COMMENT: Topic.COMMENTS,
    JobKind.UPDATE_FEED: Topic.FEED,
    JobKind.SEND_NOTIFICATION: Topic.NOTIFICATIONS,
}


@dataclass(frozen=True)
class LikePayload:
    user_id: str
    post_id: str

    @property
    def key(self) -> str:
        return self.post_id


@dataclass(frozen=True)
class FollowPayload:
    follower_id: str
    followee_id: str
    status: str = "accepted"    # only meaningful for sync-follow

    @property
    def key(self) -> str:
        return f"{self.follower_id}:{self.followee_id}"


@dataclass(frozen=True)
class SharePayload:
    share_id: str
    user_id: str
    post_id: str
    share_type: str = "repost"
    caption: Optional[str] = None
    platform: Optional[str] = None

    @property
    def key(self) -> str:
        return self.post_id


@dataclass(frozen=True)
class CommentPayload:
    post_id: str
    comment_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.post_id


@dataclass(frozen=True)
class FeedPayload:
    post_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"post:{self.post_id}" if self.post_id else f"user:{self.user_id}"


@dataclass(frozen=True)
class NotificationPayload:
    user_id: str                 # recipient
    type: str                    # like | follow | follow_request | follow_accept | share | comment | reply
    actor_id: str
    post_id: Optional[str] = None
    comment_id: Optional[str] = None
    share_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.user_id


Payload = Union[
    LikePayload,
    FollowPayload,
    SharePayload,
    CommentPayload,
    FeedPayload,
    NotificationPayload,
]

PAYLOAD_FOR_KIND: dict[JobKind, type] = {
    JobKind.SYNC_LIKE: LikePayload,
    JobKind.SYNC_UNLIKE: LikePayload,
    JobKind.SYNC_FOLLOW: FollowPayload,
    JobKind.SYNC_UNFOLLOW: FollowPayload,
    JobKind.SYNC_SHARE: SharePayload,
    JobKind.SYNC_UNSHARE: SharePayload,
    JobKind.SYNC_COMMENT: CommentPayload,
    JobKind.UPDATE_FEED: FeedPayload,
    JobKind.SEND_NOTIFICATION: NotificationPayload,
}


@dataclass
class SyncJob:
    kind: JobKind
    payload: Payload
    attempts: int = 0
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        expected = PAYLOAD_FOR_KIND[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.kind.value} expects {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def topic(self) -> Topic:
        return TOPIC_FOR_KIND[self.kind]

    @property
    def partition_key(self) -> str:
        return self.payload.key

    def to_message(self) -> dict:
        return {
            "kind": self.kind.value,
            "payload": asdict(self.payload),
            "attempts": self.attempts,
            "job_id": self.job_id,
        }

    @classmethod
    def from_message(cls, message: dict) -> "SyncJob":
        kind = JobKind(message["kind"])
        payload = PAYLOAD_FOR_KIND[kind](**message["payload"])
        return cls(
            kind=kind,
            payload=payload,
            attempts=int(message.get("attempts", 0)),
            job_id=message.get("job_id") or str(uuid.uuid4()),
        )
