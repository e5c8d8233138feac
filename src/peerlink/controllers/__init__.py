from .websocket_controller import (
    init as init_websocket_controller,
    get_client as get_websocket_client,
)
from ..tools.logger import *
from ..use_cases.session_manager import SessionManager


async def connect(config) -> SessionManager:
    """
    Build the Socket.IO client and the session manager for it, and connect.
    Authentication starts from the 'connect' topic.
    """
    client = await get_websocket_client(config)
    manager = SessionManager(client, config)
    init_websocket_controller(client, manager)

    await client.connect(config.server_url)
    log_info(f"Connected to WebSocket server at {config.server_url}")
    return manager


async def main_websocket_task(config):
    """
    Main function to connect the WebSocket client to the server.
    """
    manager = await connect(config)
    try:
        await manager.client.wait()
    finally:
        if manager.authenticated:
            await manager.drop()
        http_session = getattr(manager.client.eio, "http", None)
        if http_session is not None and not http_session.closed:
            await http_session.close()
