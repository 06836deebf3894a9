import json
import asyncio
import logging
from starlette.routing import Route, WebSocketRoute
from starlette.requests import Request
from starlette.websockets import WebSocket, WebSocketDisconnect
from starlette.middleware import Middleware
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from rustctl.game.snapshot import Command, SharedState
from rustctl.web.middleware import SecurityHeadersMiddleware

log = logging.getLogger(__name__)


async def get_state(request: Request) -> JSONResponse:
    """Returns the current snapshot of the supervised game server."""
    shared: SharedState = request.app.state.shared
    return JSONResponse(shared.snapshot().to_dict())


async def _push_snapshots(websocket: WebSocket, shared: SharedState, interval: float) -> None:
    """Sends the snapshot to one client on a fixed interval until the connection goes away."""
    try:
        while True:
            await websocket.send_json(shared.snapshot().to_dict())
            await asyncio.sleep(interval)
    except (WebSocketDisconnect, RuntimeError) as e:
        log.debug(f"Stopped pushing snapshots: {e!r}")


async def handle_websocket_connection(websocket: WebSocket) -> None:
    """
    Streams snapshots to a dashboard client and queues the commands it sends,
    e.g. `{"_type": "Stop"}`.
    """
    shared: SharedState = websocket.app.state.shared
    await websocket.accept()
    client = websocket.client.host if websocket.client else "unknown"
    log.info(f"WebSocket connection established from {client}")

    pusher = asyncio.create_task(_push_snapshots(websocket, shared, websocket.app.state.sync_interval))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                command = Command.parse(json.loads(data))
            except (ValueError, TypeError) as e:
                log.warning(f"Rejected dashboard command {data!r}: {e}")
                continue
            log.info(f"Received dashboard command: {command.value}")
            shared.commands.put(command)
    except WebSocketDisconnect:
        pass
    finally:
        pusher.cancel()
        log.info(f"WebSocket connection from {client} closed.")


def create_app(shared: SharedState, sync_interval: float = 0.2) -> Starlette:
    """
    Builds the dashboard application.

    :param shared: The state it reports on and queues commands into.
    :param sync_interval: Seconds between snapshots pushed over the WebSocket.
    """
    routes = [
        Route("/state", endpoint=get_state, methods=["GET"]),
        WebSocketRoute("/sock", endpoint=handle_websocket_connection),
    ]
    app = Starlette(debug=False, routes=routes, middleware=[Middleware(SecurityHeadersMiddleware)])
    app.state.shared = shared
    app.state.sync_interval = sync_interval
    return app
