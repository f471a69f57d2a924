"""
King Of the Bay live tracking relay.

WebSocket hub that routes participant positions and SOS alerts to the
organizer screens, plus the reconnecting client used to talk to it.
"""

__version__ = "1.0.0"
