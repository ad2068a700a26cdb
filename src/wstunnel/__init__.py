"""
TCP over WebSocket tunnel.

Client mode accepts local TCP connections and carries each one over its own
outbound WebSocket (wss://) connection. Server mode accepts those WebSocket
connections over TLS and forwards each one to a fixed TCP target.
"""

__version__ = "1.0.0"
