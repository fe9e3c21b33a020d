from fastapi import APIRouter, Depends, WebSocket
from starlette.websockets import WebSocketDisconnect

from shared.security import verify_internal_api_key, websocket_has_internal_key

from .dependencies import get_dispatcher
from .dispatcher import NotificationDispatcher

router = APIRouter(tags=["Notifications"])
public_router = APIRouter()


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "notification", "status": "running"}


# Protected: Only cron jobs / ops tooling with the API key can force a drain
@router.post("/drain", dependencies=[Depends(verify_internal_api_key)])
async def drain_outbox(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    delivered = await dispatcher.drain()
    return {"delivered": delivered}


@router.websocket("/ws/printers/{restaurant_id}")
async def printer_socket(websocket: WebSocket, restaurant_id: int):
    if not websocket_has_internal_key(websocket):
        await websocket.close(code=1008)
        return

    broadcaster = websocket.app.state.broadcaster
    await broadcaster.connect(restaurant_id, websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        broadcaster.disconnect(restaurant_id, websocket)
