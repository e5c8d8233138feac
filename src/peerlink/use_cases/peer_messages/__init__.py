from typing import Callable, Dict, Optional
from ...tools.logger import log_debug, log_error


class PeerMessageRouter:
    """
    Dispatches peer messages, from a data channel or relayed by the server,
    to listeners registered by message type and optionally by source peer.

    Lookup order: listener for (msgType, source), listener for msgType,
    then the default listener. Listeners are called as
    listener(peer_id, msg_type, msg_data, targeting).
    """

    def __init__(self):
        self._default: Optional[Callable] = None
        self._by_type: Dict[str, Callable] = {}
        self._by_source: Dict[str, Dict[str, Callable]] = {}

    def set_peer_listener(self, listener: Optional[Callable], msg_type: str = None, source: str = None):
        if not msg_type:
            self._default = listener
        elif not source:
            self._set(self._by_type, msg_type, listener)
        else:
            self._set(self._by_source.setdefault(msg_type, {}), source, listener)

    @staticmethod
    def _set(table: dict, key: str, listener: Optional[Callable]):
        if listener is None:
            table.pop(key, None)
        else:
            table[key] = listener

    def clear_source(self, source: str):
        """Remove every listener bound to one source peer."""
        for sources in self._by_source.values():
            sources.pop(source, None)

    def distribute(self, peer_id: str, message: dict, targeting: Optional[dict] = None) -> bool:
        msg_type = message.get("msgType")
        msg_data = message.get("msgData")
        if not msg_type:
            log_debug(f"Received peer message without msgType from {peer_id}")
            return False

        listener = (
            self._by_source.get(msg_type, {}).get(peer_id)
            or self._by_type.get(msg_type)
            or self._default
        )
        if listener is None:
            log_debug(f"Unhandled peer message {msg_type} from {peer_id}")
            return False

        try:
            listener(peer_id, msg_type, msg_data, targeting)
        except Exception as e:
            log_error(f"Error in peer listener for {msg_type}: {e}")
        return True
