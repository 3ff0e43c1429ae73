# chatrelay/infra/qr_render.py
"""Render a raw pairing payload as a PNG data URL the UI can show in an <img>."""
from __future__ import annotations

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def render_qr_data_url(payload: str, *, box_size: int = 8, border: int = 2) -> str:
    if not payload:
        raise ValueError("QR payload is empty")

    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
