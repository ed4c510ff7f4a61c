"""Peer-to-peer screen sharing over a TURN relay with H264 forced via SDP."""

__version__ = "0.1.0"
