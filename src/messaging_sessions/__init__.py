"""
Messaging Sessions

Multi-tenant connection and delivery manager for a QR-paired chat protocol.

Each tenant owns one protocol session: pairing by scan code, credential
persistence, automatic reconnection, rate-limited sends with delivery
tracking, and event notifications to an external backend.
"""

__version__ = "0.1.0"
