from .....tools.logger import *
from .....tools.errors import SignalingError
from . import topic
import asyncio

NAME = "connect"


@topic(NAME)
def init(client, manager):
    """
    Handle the 'connect' topic: authenticate as soon as the socket is up.
    """

    async def authenticate():
        try:
            await manager.authenticate()
        except SignalingError as e:
            log_error(f"Authentication failed: {e.text}")
            await client.disconnect()

    @client.on(NAME)
    async def callback():
        log_info("Connection established with the server.")
        asyncio.create_task(authenticate())
