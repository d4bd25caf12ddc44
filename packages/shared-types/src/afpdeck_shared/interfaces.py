"""
Backend-agnostic storage contract for the notification center.

Implementations (DynamoDB, MongoDB) live in separate packages (aws-adapters,
mongo-adapters). Request handlers depend on this interface and receive the
implementation from the backend factory in afpdeck_adapters.
"""

from typing import Protocol, runtime_checkable

from .models import (
    DeletedSubscriptionRemainder,
    RegisteredSubscriptionDocument,
    RegisterSubscriptionDocument,
    UserPreferencesDocument,
    WebPushUserDocument,
)


@runtime_checkable
class AccessStorage(Protocol):
    """
    Store for user preferences, web-push registrations, and subscriptions.

    Every operation taking ``name`` or ``browser_id`` accepts ALL to mean every
    matching record of the owner. A non-sentinel value means exactly one record
    and raises NotFoundError when it is absent.
    """

    def connect(self) -> "AccessStorage":
        """Open the backend connection and return self."""
        ...

    def disconnect(self) -> None:
        """Release the backend connection. Further calls raise NotConnectedError."""
        ...

    def store_user_preferences(self, document: UserPreferencesDocument) -> None:
        """Create or replace a preference set; refreshes ``updated``."""
        ...

    def get_user_preferences(self, owner: str, name: str) -> list[UserPreferencesDocument]:
        """Return the named preference set (one element) or every set when name is ALL."""
        ...

    def delete_user_preferences(self, owner: str, name: str) -> None:
        """Delete the named preference set, or every set when name is ALL."""
        ...

    def find_push_registrations(self, owner: str, browser_id: str) -> list[WebPushUserDocument]:
        """Return the browser's registration (one element) or all of them when browser_id is ALL."""
        ...

    def store_web_push_registration(self, document: WebPushUserDocument) -> None:
        """Create or refresh a registration, preserving ``created`` when it already exists."""
        ...

    def update_web_push_registration(self, document: WebPushUserDocument) -> None:
        """Refresh keys and endpoint of an existing registration (NotFoundError if absent)."""
        ...

    def delete_web_push_registrations(self, owner: str, browser_id: str) -> None:
        """Delete one registration, or every registration of the owner when browser_id is ALL."""
        ...

    def get_subscriptions(self, owner: str) -> list[RegisteredSubscriptionDocument]:
        """Return every subscription of the owner with its associated browsers."""
        ...

    def get_subscription(self, owner: str, name: str) -> RegisteredSubscriptionDocument:
        """Return one subscription with its associated browsers."""
        ...

    def get_browser_subscriptions(self, owner: str, browser_id: str) -> list[str]:
        """Return the names of the owner's subscriptions associated with browser_id."""
        ...

    def store_subscription(self, document: RegisterSubscriptionDocument) -> None:
        """
        Upsert the canonical subscription and associate document.browser_id with it.

        Safe to retry: repeating the call converges to one association per browser.
        """
        ...

    def delete_subscription(
        self, owner: str, name: str, browser_id: str
    ) -> DeletedSubscriptionRemainder:
        """
        Remove browser_id (or every browser when ALL) from the named subscription.

        The canonical record is deleted once no browser references it. ``remains``
        lists the browsers still associated afterwards (for name=ALL: the names of
        subscriptions still alive).
        """
        ...
