"""Event routing for the relay chat server.

``ChatRouter.dispatch`` turns one inbound event into an :class:`Outcome`:
the list of outbound deliveries to perform, or a no-op with a reason. It
never touches the transport, so it can be exercised without a socket.
``ChatRouter.handle`` is the transport-facing entry point that parses the
raw event, dispatches it in the connection's FIFO order and performs the
deliveries.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from relay_chat.errors import PersistenceError, ValidationError
from relay_chat.events import (
    Event,
    JoinRoom,
    LeaveRoom,
    RegisterUser,
    SendMessage,
    SendPrivate,
    StopTyping,
    StopTypingPrivate,
    Typing,
    TypingPrivate,
    parse_event,
)
from relay_chat.history import MessageStore
from relay_chat.managers import PresenceRegistry, RoomManager
from relay_chat.models import (
    Connection,
    Delivery,
    EmitFunc,
    GroupMessage,
    PrivateMessage,
)
from relay_chat.typing_state import (
    DEFAULT_TYPING_TIMEOUT,
    TypingScope,
    TypingTracker,
)

logger = logging.getLogger(__name__)

# Outbound event names
SYSTEM_MESSAGE = "systemMessage"
RECEIVE_MESSAGE = "receiveMessage"
RECEIVE_PRIVATE = "receivePrivate"
TYPING = "typing"
STOP_TYPING = "stopTyping"
EVENT_REJECTED = "eventRejected"

Handler = Callable[[Connection, Any], Awaitable["Outcome"]]


@dataclass
class Outcome:
    """Result of dispatching one event."""

    deliveries: list[Delivery] = field(default_factory=list)
    reason: Optional[str] = None  # set when the event was not routed

    @classmethod
    def noop(cls, reason: str) -> "Outcome":
        return cls(reason=reason)

    @property
    def routed(self) -> bool:
        return self.reason is None


async def deliver(deliveries: Iterable[Delivery]) -> int:
    """Send each delivery, isolating failures per recipient.

    Returns:
        Number of deliveries that were sent
    """
    sent = 0
    for delivery in deliveries:
        connection = delivery.connection
        if not connection.connected:
            logger.debug(f"Skipping {delivery.event} to disconnected {connection.sid}")
            continue
        try:
            await connection.send(delivery.event, delivery.payload)
        except Exception as e:
            logger.warning(
                f"Failed to deliver {delivery.event} to {connection.sid}: {e}"
            )
            continue
        sent += 1
    return sent


def room_typing_payload(room: str, sender: str) -> dict[str, Any]:
    return {"type": "room", "room": room, "from": sender}


def room_stop_typing_payload(room: str) -> dict[str, Any]:
    return {"type": "room", "room": room}


def private_typing_payload(sender: str) -> dict[str, Any]:
    return {"type": "private", "from": sender}


class ChatRouter:
    """Routes inbound events between connections, rooms and the message store."""

    def __init__(
        self,
        store: MessageStore,
        registry: Optional[PresenceRegistry] = None,
        rooms: Optional[RoomManager] = None,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT,
        reject_invalid_events: bool = False,
    ) -> None:
        self.store = store
        self.registry = registry or PresenceRegistry()
        self.rooms = rooms or RoomManager()
        self.typing = TypingTracker(typing_timeout, on_expire=self._on_typing_expired)
        self._reject_invalid_events = reject_invalid_events
        self._connections: dict[str, Connection] = {}
        self._handlers: dict[type, Handler] = {
            RegisterUser: self._register_user,
            JoinRoom: self._join_room,
            LeaveRoom: self._leave_room,
            SendMessage: self._send_message,
            SendPrivate: self._send_private,
            Typing: self._typing,
            StopTyping: self._stop_typing,
            TypingPrivate: self._typing_private,
            StopTypingPrivate: self._stop_typing_private,
        }

    # Connection lifecycle

    def connect(self, sid: str, emit: EmitFunc) -> Connection:
        """Create the connection for a new transport session."""
        connection = Connection(sid=sid, emit=emit)
        self._connections[sid] = connection
        logger.info(f"Connected: {sid}")
        return connection

    def get_connection(self, sid: str) -> Optional[Connection]:
        return self._connections.get(sid)

    async def disconnect(self, sid: str) -> Outcome:
        """Tear down a connection and release everything it held.

        Clears its typing indicators, announces its departure to its room
        and removes its presence entry if it still owns it.
        """
        connection = self._connections.pop(sid, None)
        if connection is None:
            return Outcome.noop("unknown connection")

        async with connection.lock:
            connection.connected = False
            deliveries = []
            for scope in self.typing.drop_connection(connection):
                deliveries.extend(self._stop_typing_deliveries(scope, connection))

            room = self.rooms.leave(connection)
            if room is not None:
                deliveries.extend(
                    self.rooms.broadcast(
                        room, SYSTEM_MESSAGE, f"{connection.name} left {room}"
                    )
                )
            self.registry.unregister(connection)

            await deliver(deliveries)

        logger.info(f"Disconnected: {sid}")
        return Outcome(deliveries)

    def close(self) -> None:
        self.typing.close()

    # Dispatch

    async def handle(
        self, connection: Connection, name: str, data: Any = None
    ) -> Outcome:
        """Parse, dispatch and deliver one raw inbound event.

        Events from the same connection are processed one at a time, in the
        order they arrived.
        """
        async with connection.lock:
            if not connection.connected:
                # Queued behind the disconnect
                return Outcome.noop("connection closed")
            try:
                event = parse_event(name, data)
            except ValidationError as e:
                outcome = self._rejected(connection, e)
            else:
                outcome = await self.dispatch(connection, event)
            await deliver(outcome.deliveries)
        return outcome

    async def dispatch(self, connection: Connection, event: Event) -> Outcome:
        """Decide what one event does. Persists if needed; delivers nothing."""
        handler = self._handlers[type(event)]
        outcome = await handler(connection, event)
        if not outcome.routed:
            logger.debug(
                f"{event.name} from {connection.sid} not routed: {outcome.reason}"
            )
        return outcome

    def _rejected(self, connection: Connection, error: ValidationError) -> Outcome:
        logger.debug(f"Dropped {error.event} from {connection.sid}: {error.reason}")
        outcome = Outcome.noop(error.reason)
        if self._reject_invalid_events:
            outcome.deliveries.append(
                Delivery(
                    connection=connection,
                    event=EVENT_REJECTED,
                    payload={"event": error.event, "reason": error.reason},
                )
            )
        return outcome

    async def _register_user(
        self, connection: Connection, event: RegisterUser
    ) -> Outcome:
        self.registry.register(event.username, connection)
        return Outcome()

    async def _join_room(self, connection: Connection, event: JoinRoom) -> Outcome:
        deliveries = []
        old_name = connection.name
        previous = connection.room
        if previous is not None and previous != event.room:
            deliveries.extend(self._stop_room_typing(connection, previous))

        connection.display_name = event.username
        moved_from = self.rooms.join(connection, event.room)
        if moved_from is not None:
            deliveries.extend(
                self.rooms.broadcast(
                    moved_from, SYSTEM_MESSAGE, f"{old_name} left {moved_from}"
                )
            )
        deliveries.extend(
            self.rooms.broadcast(
                event.room,
                SYSTEM_MESSAGE,
                f"{event.username} joined {event.room}",
                exclude=connection,
            )
        )
        return Outcome(deliveries)

    async def _leave_room(self, connection: Connection, event: LeaveRoom) -> Outcome:
        room = connection.room
        if room is None:
            return Outcome.noop("not in a room")

        deliveries = self._stop_room_typing(connection, room)
        self.rooms.leave(connection)
        deliveries.extend(
            self.rooms.broadcast(room, SYSTEM_MESSAGE, f"{connection.name} left {room}")
        )
        return Outcome(deliveries)

    async def _send_message(
        self, connection: Connection, event: SendMessage
    ) -> Outcome:
        try:
            timestamp = await self.store.append_group_message(
                event.room, event.username, event.message
            )
        except PersistenceError as e:
            logger.error(
                f"sendMessage from {event.username} in {event.room} failed: {e}"
            )
            return Outcome.noop("persistence failed")

        message = GroupMessage(
            room=event.room,
            from_user=event.username,
            message=event.message,
            date_sent=timestamp,
        )
        return Outcome(
            self.rooms.broadcast(event.room, RECEIVE_MESSAGE, message.to_dict())
        )

    async def _send_private(
        self, connection: Connection, event: SendPrivate
    ) -> Outcome:
        try:
            timestamp = await self.store.append_private_message(
                event.from_user, event.to_user, event.message
            )
        except PersistenceError as e:
            logger.error(
                f"sendPrivate from {event.from_user} to {event.to_user} failed: {e}"
            )
            return Outcome.noop("persistence failed")

        payload = PrivateMessage(
            from_user=event.from_user,
            to_user=event.to_user,
            message=event.message,
            date_sent=timestamp,
        ).to_dict()

        deliveries = []
        target = self.registry.lookup(event.to_user)
        if target is None:
            logger.debug(f"{event.to_user} is offline, private message stored only")
        elif target is not connection:
            deliveries.append(
                Delivery(connection=target, event=RECEIVE_PRIVATE, payload=payload)
            )
        # The sender always gets the stored copy back as confirmation
        deliveries.append(
            Delivery(connection=connection, event=RECEIVE_PRIVATE, payload=payload)
        )
        return Outcome(deliveries)

    async def _typing(self, connection: Connection, event: Typing) -> Outcome:
        self.typing.start(TypingScope.for_room(event.room), connection)
        return Outcome(
            self.rooms.broadcast(
                event.room,
                TYPING,
                room_typing_payload(event.room, event.username),
                exclude=connection,
            )
        )

    async def _stop_typing(self, connection: Connection, event: StopTyping) -> Outcome:
        self.typing.stop(TypingScope.for_room(event.room))
        return Outcome(
            self.rooms.broadcast(
                event.room,
                STOP_TYPING,
                room_stop_typing_payload(event.room),
                exclude=connection,
            )
        )

    async def _typing_private(
        self, connection: Connection, event: TypingPrivate
    ) -> Outcome:
        target = self.registry.lookup(event.to_user)
        if target is None:
            return Outcome.noop("recipient offline")

        scope = TypingScope.for_pair(event.from_user, event.to_user)
        self.typing.start(scope, connection)
        return Outcome(
            [
                Delivery(
                    connection=target,
                    event=TYPING,
                    payload=private_typing_payload(event.from_user),
                )
            ]
        )

    async def _stop_typing_private(
        self, connection: Connection, event: StopTypingPrivate
    ) -> Outcome:
        scope = TypingScope.for_pair(event.from_user, event.to_user)
        self.typing.stop(scope)
        deliveries = self._stop_typing_deliveries(scope, connection)
        if not deliveries:
            return Outcome.noop("recipient offline")
        return Outcome(deliveries)

    # Typing cleanup

    def _stop_room_typing(self, connection: Connection, room: str) -> list[Delivery]:
        """Clear the room's indicator if this connection was the one typing."""
        scope = TypingScope.for_room(room)
        if scope not in self.typing.owned_by(connection):
            return []
        self.typing.stop(scope)
        return self._stop_typing_deliveries(scope, connection)

    def _stop_typing_deliveries(
        self, scope: TypingScope, owner: Connection
    ) -> list[Delivery]:
        if scope.is_room:
            return self.rooms.broadcast(
                scope.room,
                STOP_TYPING,
                room_stop_typing_payload(scope.room),
                exclude=owner,
            )

        target = self.registry.lookup(scope.recipient)
        if target is None:
            return []
        return [
            Delivery(
                connection=target,
                event=STOP_TYPING,
                payload=private_typing_payload(scope.sender),
            )
        ]

    async def _on_typing_expired(self, scope: TypingScope, owner: Connection) -> None:
        await deliver(self._stop_typing_deliveries(scope, owner))
