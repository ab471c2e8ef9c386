"""
WebSocket Endpoint for the real-time chat channel

Frames are JSON objects {"event": <name>, "data": <payload>} both ways:
- join:session    client -> server, data is a session id (or null)
- session:joined  server -> client, data is the joined session
- chat:message    client -> server {content, imageUrl?};
                  server -> room, data is the persisted message
- ping / pong     keepalive

The credential comes from the `token` query parameter or an Authorization
header. Connections without a valid one are closed before being accepted.
Anything malformed or unauthorized after that is dropped without a reply.
"""

import json
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PayloadError

from sitechat.core.logging_config import room_context
from sitechat.schemas.chat import IncomingChatMessage
from sitechat.services.auth import extract_bearer
from sitechat.services.registry import Connection

logger = structlog.get_logger(__name__)

router = APIRouter()


async def dispatch(connection: Connection, state: Any, raw: str) -> None:
    """Handle one client frame."""
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Frame dropped, invalid JSON", connection_id=connection.id)
        return

    if not isinstance(frame, dict):
        logger.debug("Frame dropped, not an object", connection_id=connection.id)
        return

    event = frame.get("event")
    data = frame.get("data")

    if event == "join:session":
        await state.registry.join_room(connection, data)

    elif event == "chat:message":
        if not isinstance(data, dict):
            logger.debug("chat:message dropped, payload is not an object", connection_id=connection.id)
            return
        try:
            payload = IncomingChatMessage.model_validate(data)
        except PayloadError:
            logger.debug("chat:message dropped, malformed payload", connection_id=connection.id)
            return
        await state.pipeline.submit_human_message(connection, payload.content, payload.image_url)

    elif event == "ping":
        await connection.send("pong", None)

    else:
        logger.debug("Unknown event dropped", connection_id=connection.id, event=str(event)[:50])


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket):
    state = websocket.app.state

    token = websocket.query_params.get("token") or extract_bearer(websocket.headers.get("authorization"))
    identity = state.auth_service.authenticate(token)
    if identity is None:
        logger.info("WebSocket handshake rejected")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        await websocket.accept()
    except Exception as e:
        logger.error("Failed to accept WebSocket connection", error=str(e))
        return

    connection = Connection(identity=identity, transport=websocket)
    logger.info("WebSocket connected", connection_id=connection.id, user_id=identity.user_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))

            raw = message.get("text")
            if raw is None:
                logger.debug("Binary frame dropped", connection_id=connection.id)
                continue

            binding = state.registry.binding_for(connection)
            try:
                if binding is not None:
                    with room_context(binding.room_key):
                        await dispatch(connection, state, raw)
                else:
                    await dispatch(connection, state, raw)
            except WebSocketDisconnect:
                raise
            except Exception as e:
                # One bad event must not end the connection
                logger.exception("Event handling failed", connection_id=connection.id, error=str(e))

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected", connection_id=connection.id)
    except Exception as e:
        logger.error("WebSocket error", connection_id=connection.id, error=str(e))
    finally:
        state.registry.leave(connection)
