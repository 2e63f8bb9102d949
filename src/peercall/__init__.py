"""Peer-to-peer call core with live translated captions.

This package provides the negotiation state machine, relay transports,
caption aggregation and the call controller that ties them together for a
single two-party room visit.
"""

__version__ = "0.1.0"
