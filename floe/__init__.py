"""floe: direct peer-to-peer file transfer.

Two pieces live here: a coordination service that pairs exactly two anonymous peers
per room and relays their signaling, and a chunked, flow-controlled, resumable
transfer engine that runs over the direct channel those peers establish.
"""

__version__ = "0.1.0"
