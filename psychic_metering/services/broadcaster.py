"""
Real-time Broadcaster - Socket.IO delivery of session and credit state.

Every user has a room named after their user id. The room is joined on
connect, from the identity proven by the connection's bearer token; a client
cannot pick the room it listens to.

Delivery is best-effort: an emit failure is logged and dropped. Events carry
full state, so a missed event is superseded by the next one or by the
status polling endpoint.
"""

from typing import Any
from uuid import UUID

import socketio

from psychic_metering.config import settings
from psychic_metering.exceptions import AuthenticationError
from psychic_metering.models.api import (
    CreditsUpdateEvent,
    FeedbackSubmittedEvent,
    SessionUpdateEvent,
)
from psychic_metering.observability.logging import get_logger
from psychic_metering.observability.metrics import metrics
from psychic_metering.services.identity import verify_access_token

logger = get_logger(__name__)

SESSION_UPDATE_EVENT = "sessionUpdate"
CREDITS_UPDATE_EVENT = "creditsUpdate"
FEEDBACK_SUBMITTED_EVENT = "feedbackSubmitted"


def user_room(user_id: UUID) -> str:
    """Room name for a user's connected clients."""
    return str(user_id)


class SessionBroadcaster:
    """Pushes session, credit and feedback events to the owning user's room."""

    def __init__(self, sio: socketio.AsyncServer) -> None:
        self.sio = sio

    async def session_update(self, event: SessionUpdateEvent) -> None:
        """Emit a full session state snapshot to the session owner."""
        payload = event.model_dump(mode="json", by_alias=True)
        await self._emit(SESSION_UPDATE_EVENT, payload, event.user_id)

    async def credits_update(self, user_id: UUID, credits: int) -> None:
        """Emit the current wallet credits to the wallet owner."""
        event = CreditsUpdateEvent(user_id=user_id, credits=credits)
        payload = event.model_dump(mode="json", by_alias=True)
        await self._emit(CREDITS_UPDATE_EVENT, payload, user_id)

    async def feedback_submitted(self, event: FeedbackSubmittedEvent) -> None:
        """Confirm a stored rating to the user who left it."""
        payload = event.model_dump(mode="json", by_alias=True)
        await self._emit(FEEDBACK_SUBMITTED_EVENT, payload, event.user_id)

    async def _emit(self, name: str, payload: dict[str, Any], user_id: UUID) -> None:
        try:
            await self.sio.emit(name, payload, room=user_room(user_id))
        except Exception as exc:
            metrics.record_broadcast(name, success=False)
            logger.warning(
                "broadcast_failed", event_name=name, user_id=str(user_id), error=str(exc)
            )
            return
        metrics.record_broadcast(name, success=True)


class SocketIOSessionHandler:
    """
    Socket.IO server for session events.

    - Authenticates on connect with `auth={"token": "<bearer>"}`
    - Enters the room of the authenticated user
    - `join` re-enters that same room; any id sent by the client is ignored
    """

    def __init__(self, allowed_origins: list[str] | str) -> None:
        self.allowed_origins = allowed_origins
        self.sio = self._create_socketio_server()
        self._setup_event_handlers()

    def _create_socketio_server(self) -> socketio.AsyncServer:
        return socketio.AsyncServer(
            cors_allowed_origins=self.allowed_origins,
            async_mode="asgi",
            logger=False,
            engineio_logger=False,
        )

    def _setup_event_handlers(self) -> None:
        @self.sio.on("connect")
        async def handle_connect(sid: str, environ: dict, auth: dict | None = None) -> None:
            await self._handle_connect(sid, environ, auth)

        @self.sio.on("join")
        async def handle_join(sid: str, data: Any = None) -> None:
            await self._handle_join(sid)

        @self.sio.on("disconnect")
        async def handle_disconnect(sid: str, *args: Any) -> None:
            logger.info("socket_disconnected", sid=sid)

    async def _handle_connect(self, sid: str, environ: dict, auth: dict | None) -> None:
        token = (auth or {}).get("token") or _bearer_from_environ(environ)
        try:
            user_id = verify_access_token(token or "")
        except AuthenticationError as exc:
            logger.warning("socket_connect_rejected", sid=sid, reason=exc.message)
            raise ConnectionRefusedError(exc.message) from exc

        await self.sio.save_session(sid, {"user_id": str(user_id)})
        await self.sio.enter_room(sid, user_room(user_id))
        logger.info("socket_connected", sid=sid, user_id=str(user_id))

    async def _handle_join(self, sid: str) -> None:
        sock = await self.sio.get_session(sid) or {}
        user_id = sock.get("user_id")
        if not user_id:
            return
        await self.sio.enter_room(sid, user_id)

    def get_asgi_app(self, other_asgi_app: Any) -> socketio.ASGIApp:
        """Wrap the HTTP app so Socket.IO is served on the same port."""
        return socketio.ASGIApp(self.sio, other_asgi_app=other_asgi_app)


def _bearer_from_environ(environ: dict) -> str | None:
    header = environ.get("HTTP_AUTHORIZATION") or ""
    if header.startswith("Bearer "):
        return header[len("Bearer ") :]
    return None


# Global Socket.IO handler and broadcaster
socket_handler = SocketIOSessionHandler(settings.allowed_origins)
broadcaster = SessionBroadcaster(socket_handler.sio)


def get_broadcaster() -> SessionBroadcaster:
    """FastAPI dependency returning the global broadcaster."""
    return broadcaster
