from .....tools.logger import *
from . import topic

NAME = "disconnect"


@topic(NAME)
def init(client, manager):
    """
    Handle the 'disconnect' topic: drop every peer and room bound to the connection.
    """

    @client.on(NAME)
    async def callback(*args):
        log_info("Connection ended by the server.")
        await manager.drop()
