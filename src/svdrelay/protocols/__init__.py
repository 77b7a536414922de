"""Structural protocols for svdrelay components."""

from svdrelay.protocols.client import ClientHandle

__all__ = ["ClientHandle"]
