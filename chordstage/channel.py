"""Channel manager: named pub/sub channel, presence roster and owner-gated broadcast."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from chordstage import config
from chordstage.errors import TransportUnavailable
from chordstage.messages import Delta, parse_delta
from chordstage.models import Participant, ParticipantRole, Session

logger = logging.getLogger(__name__)

BroadcastHandler = Callable[[str, dict[str, Any]], None]
PresenceHandler = Callable[[dict[str, list[dict[str, Any]]]], None]


def channel_name(session_id: str) -> str:
    return f"{config.CHANNEL_PREFIX}{session_id}"


# ── Transport contract ──────────────────────────────────────────────────────

class Subscription(ABC):
    """Handle on one joined channel."""

    @abstractmethod
    def track(self, meta: dict[str, Any]) -> None:
        """Publish (or replace) this client's presence meta."""

    @abstractmethod
    def untrack(self) -> None:
        """Withdraw this client's presence."""

    @abstractmethod
    def send(self, event: str, payload: dict[str, Any]) -> None:
        """Broadcast an event to every other subscriber; never echoed back."""

    @abstractmethod
    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        """Full presence set keyed by client id."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Leave the channel."""


class PubSubTransport(ABC):
    """Messaging service with named channels, presence and broadcast."""

    @abstractmethod
    def subscribe(
        self,
        channel: str,
        client_id: str,
        on_broadcast: BroadcastHandler,
        on_presence_sync: PresenceHandler,
    ) -> Subscription:
        """
        Join *channel*.

        Raises:
            TransportUnavailable: If the service cannot be reached.
        """


# ── In-process transport ────────────────────────────────────────────────────

class _MemorySubscription(Subscription):
    def __init__(
        self,
        hub: InMemoryPubSub,
        channel: str,
        client_id: str,
        on_broadcast: BroadcastHandler,
        on_presence_sync: PresenceHandler,
    ) -> None:
        self._hub = hub
        self.channel = channel
        self.client_id = client_id
        self.on_broadcast = on_broadcast
        self.on_presence_sync = on_presence_sync
        self.active = True

    def track(self, meta: dict[str, Any]) -> None:
        self._hub._check_available()
        self._hub._presence.setdefault(self.channel, {})[self.client_id] = [dict(meta)]
        self._hub._sync_presence(self.channel)

    def untrack(self) -> None:
        presence = self._hub._presence.get(self.channel, {})
        if presence.pop(self.client_id, None) is not None:
            self._hub._sync_presence(self.channel)

    def send(self, event: str, payload: dict[str, Any]) -> None:
        self._hub._check_available()
        for sub in list(self._hub._subscribers.get(self.channel, [])):
            if sub is not self and sub.active:
                sub.on_broadcast(event, dict(payload))

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        presence = self._hub._presence.get(self.channel, {})
        return {key: [dict(m) for m in metas] for key, metas in presence.items()}

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.untrack()
        self.active = False
        subscribers = self._hub._subscribers.get(self.channel, [])
        if self in subscribers:
            subscribers.remove(self)


class InMemoryPubSub(PubSubTransport):
    """
    In-process pub/sub with presence.

    Delivery is synchronous and in subscription order. Setting ``available``
    to False makes every call raise :class:`TransportUnavailable`.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[_MemorySubscription]] = {}
        self._presence: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise TransportUnavailable("in-memory pub/sub is offline")

    def _sync_presence(self, channel: str) -> None:
        for sub in list(self._subscribers.get(channel, [])):
            if sub.active:
                sub.on_presence_sync(sub.presence_state())

    def subscribe(
        self,
        channel: str,
        client_id: str,
        on_broadcast: BroadcastHandler,
        on_presence_sync: PresenceHandler,
    ) -> Subscription:
        self._check_available()
        sub = _MemorySubscription(self, channel, client_id, on_broadcast, on_presence_sync)
        self._subscribers.setdefault(channel, []).append(sub)
        logger.debug("%s subscribed to %s", client_id, channel)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return sum(1 for s in self._subscribers.get(channel, []) if s.active)


# ── Channel manager ─────────────────────────────────────────────────────────

class ChannelManager:
    """
    One participant's membership of a live-session channel.

    The roster is rebuilt from the full presence set on every presence sync,
    and the owner flag is derived from the session's owner id rather than
    trusted from presence meta.
    """

    def __init__(
        self,
        transport: PubSubTransport,
        session: Session,
        participant: Participant,
        on_delta: Callable[[Delta], None] | None = None,
        on_roster: Callable[[list[Participant]], None] | None = None,
        on_peer_joined: Callable[[list[str]], None] | None = None,
    ) -> None:
        self._transport = transport
        self.session = session
        self.participant = participant
        self.participant.is_owner = participant.id == session.owner_id
        self.on_delta = on_delta
        self.on_roster = on_roster
        self.on_peer_joined = on_peer_joined
        self._subscription: Subscription | None = None
        self._seen_ids: set[str] = {participant.id}

    @property
    def channel(self) -> str:
        return channel_name(self.session.id)

    @property
    def is_owner(self) -> bool:
        return self.participant.id == self.session.owner_id

    @property
    def is_joined(self) -> bool:
        return self._subscription is not None

    @property
    def participants(self) -> list[Participant]:
        return list(self.session.participants)

    def join(self) -> Subscription:
        """
        Subscribe to the session channel and track this participant's presence.

        Raises:
            TransportUnavailable: If the messaging service cannot be reached.
        """
        if self._subscription is not None:
            return self._subscription
        subscription = self._transport.subscribe(
            self.channel,
            self.participant.id,
            self._handle_broadcast,
            self._handle_presence_sync,
        )
        self._subscription = subscription
        self.participant.last_seen = time.time()
        try:
            subscription.track(self.participant.to_presence())
        except TransportUnavailable:
            self._subscription = None
            subscription.unsubscribe()
            raise
        logger.info("Joined %s as %s", self.channel, self.participant.id)
        return subscription

    def leave(self) -> None:
        """Untrack and unsubscribe; failures are logged, never raised."""
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            subscription.untrack()
        except Exception as exc:
            logger.warning("Untrack failed on %s: %s", self.channel, exc)
        try:
            subscription.unsubscribe()
        except Exception as exc:
            logger.warning("Unsubscribe failed on %s: %s", self.channel, exc)
        logger.info("Left %s", self.channel)

    def broadcast(self, kind: str, payload: dict[str, Any]) -> bool:
        """
        Send an event to every other participant.

        Only the owner may broadcast; other callers are dropped and get False.
        """
        if not self.is_owner:
            logger.debug("Dropping %s broadcast from non-owner %s", kind, self.participant.id)
            return False
        if self._subscription is None:
            logger.debug("Dropping %s broadcast; channel not joined", kind)
            return False
        try:
            self._subscription.send(kind, payload)
        except TransportUnavailable as exc:
            logger.warning("Broadcast of %s failed: %s", kind, exc)
            return False
        return True

    def publish(self, delta: Delta) -> bool:
        return self.broadcast(delta.KIND, delta.to_wire())

    def update_role(self, role: ParticipantRole) -> None:
        """Change this participant's role and re-track presence so peers see it."""
        self.participant.role = role
        if self._subscription is None:
            return
        self.participant.last_seen = time.time()
        try:
            self._subscription.track(self.participant.to_presence())
        except TransportUnavailable as exc:
            logger.warning("Role update not published: %s", exc)

    # ── Transport callbacks ─────────────────────────────────────────────

    def _handle_broadcast(self, event: str, payload: dict[str, Any]) -> None:
        delta = parse_delta(payload, kind=event)
        if delta is not None and self.on_delta is not None:
            self.on_delta(delta)

    def _handle_presence_sync(self, state: dict[str, list[dict[str, Any]]]) -> None:
        roster: list[Participant] = []
        for key, metas in state.items():
            if not metas:
                continue
            # Several metas under one key are the same client; the latest wins
            participant = Participant.from_presence(metas[-1])
            if not participant.id:
                participant.id = key
            participant.is_owner = participant.id == self.session.owner_id
            roster.append(participant)

        self.session.participants = roster
        ids = [p.id for p in roster]
        new_ids = [pid for pid in ids if pid not in self._seen_ids]
        # Departed peers count as new again when they come back
        self._seen_ids = {self.participant.id, *ids}

        if self.on_roster is not None:
            self.on_roster(list(roster))
        if new_ids and self.on_peer_joined is not None:
            logger.debug("New peers on %s: %s", self.channel, ", ".join(new_ids))
            self.on_peer_joined(new_ids)
