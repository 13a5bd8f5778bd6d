"""
Scan-code rendering

Turns the raw pairing code into a PNG data URL for display.
"""

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


class QRCodeRenderer:
    """Render scan codes as ``data:image/png;base64,...`` URLs."""

    def __init__(self, box_size: int = 10, border: int = 1):
        self.box_size = box_size
        self.border = border

    def render(self, code: str) -> str:
        qr = qrcode.QRCode(
            error_correction=ERROR_CORRECT_M,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(code)
        qr.make(fit=True)
        img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


def raw_code_data_url(code: str) -> str:
    """Fallback representation when rendering fails."""
    return "data:text/plain;base64," + base64.b64encode(code.encode()).decode()
