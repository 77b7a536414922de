"""
svdrelay - SVDRP command relay

Lets many concurrent clients share a single-session SVDRP backend by
serializing their commands onto one connection and routing each response
back to the client that issued it.
"""

__version__ = "1.0.0"
__author__ = "svdrelay developers"

__all__ = ["__version__"]
