"""Scan-code rendering."""

from messaging_sessions.rendering.qr import QRCodeRenderer, raw_code_data_url

__all__ = ["QRCodeRenderer", "raw_code_data_url"]
