"""
WebRTC Data Channel Module

Handles peer-to-peer data channels: priming handshake and chunked messaging.
"""

from .peer_channel import DATA_CHANNEL_LABEL, PRIMING_TOKEN, PeerDataChannel

__all__ = ["DATA_CHANNEL_LABEL", "PRIMING_TOKEN", "PeerDataChannel"]
