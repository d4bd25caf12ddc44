"""Pydantic models for user preferences, web-push registrations, and subscriptions."""

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Reserved key value: "every record of this owner" in place of a name or browser id.
ALL = "all"


def utc_now() -> datetime:
    """Return the current UTC time truncated to milliseconds (the precision both backends keep)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def to_epoch_millis(value: datetime) -> int:
    """Convert an aware (or naive UTC) datetime to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Integer timedelta division: float timestamps can lose the last millisecond.
    return (value - _EPOCH) // _MILLISECOND


def from_epoch_millis(value: int | float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=int(value))


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (drivers may return naive BSON dates)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserPreferencesDocument(BaseModel):
    """Named preference set (preferences table)."""

    owner: str = Field(..., min_length=1, description="Principal owning the record")
    name: str = Field(..., min_length=1, description="Preference set name")
    preferences: Any = Field(None, description="Opaque JSON value")
    updated: datetime | None = Field(None, description="Last write time (set by the store)")


class VapidKeys(BaseModel):
    """VAPID key pair used to sign pushes for one browser."""

    public_key: str
    private_key: str


class PushSubscriptionKeys(BaseModel):
    """Browser push subscription encryption keys."""

    auth: str
    p256dh: str


class PushSubscription(BaseModel):
    """Browser PushSubscription (endpoint + keys)."""

    endpoint: str
    keys: PushSubscriptionKeys


class WebPushUserDocument(BaseModel):
    """Web-push registration of one browser (web push table)."""

    owner: str = Field(..., min_length=1)
    browser_id: str = Field(..., min_length=1, description="Browser identifier")
    api_keys: VapidKeys
    subscription: PushSubscription
    created: datetime | None = Field(None, description="First store time; immutable")
    updated: datetime | None = Field(None, description="Last write time")


class SubscriptionDocument(BaseModel):
    """Canonical subscription record keyed by (owner, name)."""

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, description="Subscription name")
    uno: str = Field(..., description="Identifier issued by the notification service")
    subscription: dict[str, Any] = Field(default_factory=dict, description="Opaque subscription body")
    created: datetime | None = None
    updated: datetime | None = None


class RegisterSubscriptionDocument(SubscriptionDocument):
    """Input of store_subscription: canonical fields plus the registering browser."""

    browser_id: str = Field(..., min_length=1)


class RegisteredSubscriptionDocument(SubscriptionDocument):
    """Output of get_subscription(s): canonical fields plus every associated browser."""

    browser_ids: list[str] = Field(default_factory=list)

    @field_validator("browser_ids")
    @classmethod
    def _sorted_unique(cls, value: list[str]) -> list[str]:
        return sorted(set(value))


class DeletedSubscriptionRemainder(BaseModel):
    """Result of delete_subscription: what was deleted and what still references it."""

    identifier: str = Field(..., description="Deleted subscription name (or ALL)")
    remains: list[str] = Field(
        default_factory=list,
        description="Browsers (or, for name=ALL, subscription names) still registered",
    )


DEFAULT_USERPREFS_TABLENAME = "afpdeck-preferences"
DEFAULT_WEBPUSH_TABLENAME = "afpdeck-webpush"
DEFAULT_SUBSCRIPTIONS_TABLENAME = "afpdeck-subscriptions"
DEFAULT_BROWSERID_TABLENAME = "afpdeck-browserid"


class TableNames(BaseModel):
    """Physical table (DynamoDB) or collection (MongoDB) names per entity kind."""

    user_preferences: str = DEFAULT_USERPREFS_TABLENAME
    web_push: str = DEFAULT_WEBPUSH_TABLENAME
    subscriptions: str = DEFAULT_SUBSCRIPTIONS_TABLENAME
    subscription_by_browser: str = Field(
        DEFAULT_BROWSERID_TABLENAME,
        description="Subscription-by-browser index table (DynamoDB only)",
    )
