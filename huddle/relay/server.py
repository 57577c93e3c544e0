"""
aiohttp application hosting the signaling relay.

Routes:
    GET /        liveness text
    GET /health  liveness JSON
    GET /status  rooms and connections summary
    GET /ws      WebSocket message channel
"""
import asyncio
from typing import Optional

from aiohttp import web

from ..core import protocol
from ..core.config import ServerConfig
from ..core.exceptions import MessageError
from ..core.logging import setup_logging, debug_log
from .room_registry import RoomRegistry
from .signaling_relay import SignalingRelay


async def handle_index(request):
    """Handle liveness request."""
    return web.Response(text="Huddle signaling relay running")


async def handle_health(request):
    return web.json_response({'status': 'ok'})


async def handle_status(request):
    """Handle status request."""
    relay = request.app['relay']
    return web.json_response(relay.get_status())


async def handle_websocket(request):
    """Handle one client connection on /ws."""
    config = request.app['config']
    relay = request.app['relay']

    ws = web.WebSocketResponse(heartbeat=config.heartbeat)
    await ws.prepare(request)

    connection_id = relay.connect(ws.send_json)

    try:
        await ws.send_json(protocol.build_message(protocol.CONNECTED, connectionId=connection_id))

        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                try:
                    data = protocol.decode_message(msg.data)
                except MessageError as e:
                    debug_log(f"❌ [WebSocket] Invalid message", {
                        "connection_id": connection_id,
                        "error": str(e)
                    }, "WARNING")
                    continue
                await relay.handle_message(connection_id, data)
            elif msg.type == web.WSMsgType.ERROR:
                debug_log(f"❌ [WebSocket] Connection error", {
                    "connection_id": connection_id,
                    "error": str(ws.exception())
                }, "WARNING")
                break
    finally:
        await relay.disconnect(connection_id)

    return ws


def create_app(config: Optional[ServerConfig] = None, registry: Optional[RoomRegistry] = None) -> web.Application:
    """Create the relay application with an injected registry."""
    config = config or ServerConfig()
    registry = registry or RoomRegistry()

    app = web.Application()
    app['config'] = config
    app['registry'] = registry
    app['relay'] = SignalingRelay(registry)

    app.router.add_get("/", handle_index)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/ws", handle_websocket)

    return app


async def main(config: Optional[ServerConfig] = None):
    """Main server function."""
    config = config or ServerConfig()
    setup_logging(level=config.log_level, log_file=config.log_file)
    debug_log(f"🚀 [Main] Starting Huddle signaling relay", {"config": str(config)})

    app = create_app(config)
    runner = web.AppRunner(app)
    await runner.setup()

    try:
        site = web.TCPSite(runner, config.host, config.port)
        await site.start()
        debug_log(f"✅ [Main] Relay listening on http://{config.host}:{config.port}")

        # Run forever
        await asyncio.Future()
    finally:
        await runner.cleanup()


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
