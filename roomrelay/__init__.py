"""roomrelay -- a single-room, ephemeral chat relay.

Clients join one shared room over a WebSocket, exchange short messages and
see a live roster. A single coordinator owns the message log, the roster and
all moderation state.
"""

__version__ = "0.1.0"
