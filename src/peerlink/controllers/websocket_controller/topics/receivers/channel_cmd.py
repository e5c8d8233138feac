from .....tools.logger import *
from .....tools.signaling_channel import CMD_CHANNEL
from . import topic

NAME = CMD_CHANNEL


@topic(NAME)
def init(client, manager):
    """
    Handle the 'rtcCmd' topic: negotiation and room commands from the server.

    Expected message format:
    {
        "msgType": "offer|answer|candidate|reject|hangup|roomData|iceConfig|sessionData|forwardToUrl|error",
        "msgData": {...} (optional),
        "senderPeerId": "peer id" (negotiation commands only)
    }

    Returns the acknowledgment {"msgType": "ack"}, an error acknowledgment
    for a malformed envelope, or nothing for an unknown command type.
    """

    @client.on(NAME)
    async def callback(message):
        return manager.on_channel_cmd(message)
