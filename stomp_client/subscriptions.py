# =============================================================================
# STOMP Client -- Subscription Registry
# =============================================================================

from __future__ import annotations

from uuid import uuid4

from .types import AckMode, Subscription


class SubscriptionRegistry:
    """Destination -> subscription mapping, one subscription per destination."""

    def __init__(self) -> None:
        self._by_destination: dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._by_destination)

    def __contains__(self, destination: object) -> bool:
        return destination in self._by_destination

    def get(self, destination: str) -> Subscription | None:
        return self._by_destination.get(destination)

    def find_by_id(self, subscription_id: str) -> Subscription | None:
        for sub in self._by_destination.values():
            if sub.id == subscription_id:
                return sub
        return None

    def add(
        self,
        destination: str,
        ack: AckMode | str = AckMode.AUTO,
        subscription_id: str | int | None = None,
    ) -> tuple[Subscription, bool]:
        """Track *destination*.

        Returns:
            ``(subscription, created)``. When the destination is already
            tracked the existing subscription is returned and ``created``
            is False.
        """
        existing = self._by_destination.get(destination)
        if existing is not None:
            return existing, False

        if subscription_id is None:
            subscription_id = uuid4().hex
        sub = Subscription(destination=destination, id=str(subscription_id), ack=AckMode(ack))
        self._by_destination[destination] = sub
        return sub, True

    def remove_id(self, subscription_id: str | int) -> Subscription | None:
        """Stop tracking the subscription with this id, if any."""
        sub = self.find_by_id(str(subscription_id))
        if sub is not None:
            del self._by_destination[sub.destination]
        return sub

    def clear(self) -> None:
        self._by_destination.clear()

    def destinations(self) -> list[str]:
        return list(self._by_destination)

    def all(self) -> list[Subscription]:
        return list(self._by_destination.values())
