from .receivers.connect import init as init_connect
from .receivers.channel_cmd import init as init_channel_cmd
from .receivers.channel_msg import init as init_channel_msg
from .receivers.disconnect import init as init_disconnect


def initialize_all(client, manager):

    # Initialize all topic receivers
    init_connect(client, manager)
    init_channel_cmd(client, manager)
    init_channel_msg(client, manager)
    init_disconnect(client, manager)
