"""Presence - ambient audio context matching.

Turns short ambient audio samples into fingerprints and decides whether they
belong to an already known broadcast/event ("context"), minting a new context
when nothing matches.
"""

__version__ = "0.1.0"
