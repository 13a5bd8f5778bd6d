"""Stub protocol client for development."""

from messaging_sessions.providers.stub.client import StubProtocolClient

__all__ = ["StubProtocolClient"]
