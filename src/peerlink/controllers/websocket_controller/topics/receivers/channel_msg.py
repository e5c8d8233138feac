from .....tools.logger import *
from .....tools.contract_validation import ENVELOPE
from .....tools.signaling_channel import MSG_CHANNEL
from . import topic, validate_message

NAME = MSG_CHANNEL


@topic(NAME)
def init(client, manager):
    """
    Handle the 'rtcMsg' topic: application messages relayed by the server.

    Messages with a senderPeerId go to the peer listeners, the rest to the
    server message listener. Every valid message is acknowledged.
    """

    @client.on(NAME)
    @validate_message(ENVELOPE, NAME)
    async def callback(message):
        log_debug(f"Received {message.get('msgType')} message")
        return manager.on_channel_msg(message)
