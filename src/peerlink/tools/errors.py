"""
Error codes and the error reporter shared by every peerlink component.
"""

from enum import Enum
from typing import Callable, Optional
from .logger import log_error, log_warning


class ErrorCode(str, Enum):
    BAD_NAME = "BAD_NAME"                    # a user name wasn't of the desired form
    CALL_ERR = "CALL_ERR"                    # something went wrong creating the peer connection
    DEVELOPER_ERR = "DEVELOPER_ERR"          # the calling application made a mistake
    SYSTEM_ERR = "SYSTEM_ERR"                # probably an error related to the network
    CONNECT_ERR = "CONNECT_ERR"              # error while creating the server connection
    MEDIA_ERR = "MEDIA_ERR"                  # unable to get the local media
    MEDIA_WARNING = "MEDIA_WARNING"
    INTERNAL_ERR = "INTERNAL_ERR"
    PEER_GONE = "PEER_GONE"                  # peer doesn't exist
    ALREADY_CONNECTED = "ALREADY_CONNECTED"
    BAD_CREDENTIAL = "BAD_CREDENTIAL"
    ICECANDIDATE_ERR = "ICECANDIDATE_ERR"
    NOVIABLEICE = "NOVIABLEICE"
    SIGNAL_ERR = "SIGNAL_ERR"


def code_text(code) -> str:
    """Printable form of an error code, whether enum member or raw server string."""
    return code.value if isinstance(code, ErrorCode) else str(code)


class PeerLinkError(Exception):
    """Exception carrying an error code and a human readable text."""

    def __init__(self, code, text: str):
        self.code = code
        self.text = text
        super().__init__(f"{code_text(code)}: {text}")


class SignalingError(PeerLinkError):
    """Raised when the server answers with an error acknowledgment or never answers."""


class ErrorReporter:
    """
    Generic error sink used when a caller supplied no failure callback.

    Every report is logged; a registered listener is notified afterwards.
    A listener that raises never breaks the reporting component.
    """

    def __init__(self):
        self._listener: Optional[Callable] = None

    def set_listener(self, listener: Optional[Callable]):
        self._listener = listener

    def report(self, code, text: str) -> None:
        log_warning(f"[{code_text(code)}] {text}")
        if self._listener:
            try:
                self._listener(code, text)
            except Exception as e:
                log_error(f"Error in error listener: {e}")

    def developer_error(self, text: str, fatal: bool = False) -> None:
        """Report a usage mistake; fatal ones are raised so the call site fails fast."""
        self.report(ErrorCode.DEVELOPER_ERR, text)
        if fatal:
            raise PeerLinkError(ErrorCode.DEVELOPER_ERR, text)
