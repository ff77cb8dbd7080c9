import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Live channel.  Frames are ``{"event": name, "data": ...}``; every frame
    is answered with ``{"event": "ack", "for": name, "data": ack}``.
    """
    gateway = websocket.app.state.container.gateway
    connection_id = uuid.uuid4().hex
    await websocket.accept()
    gateway.on_connect(connection_id, websocket)
    await websocket.send_json({"event": "connected", "data": {"clientId": connection_id}})

    try:
        while True:
            frame = await websocket.receive_json()
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await websocket.send_json(
                    {"event": "error", "data": {"message": "frames must be objects with an 'event' name"}}
                )
                continue
            ack = await gateway.handle_inbound(connection_id, frame["event"], frame.get("data"))
            await websocket.send_json({"event": "ack", "for": frame["event"], "data": ack})
    except WebSocketDisconnect:
        pass
    except ValueError as exc:
        logger.warning("Closing %s after malformed frame: %s", connection_id, exc)
        await websocket.close(code=1003)
    finally:
        gateway.on_disconnect(connection_id)
