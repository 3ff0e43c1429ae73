# tests/test_qr_render.py
"""Tests for chatrelay/infra/qr_render.py"""
from __future__ import annotations

import base64

import pytest

from chatrelay.infra.qr_render import render_qr_data_url

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class TestRenderQrDataUrl:
    def test_png_data_url(self):
        url = render_qr_data_url("2@pairing-payload,abc,def")

        prefix = "data:image/png;base64,"
        assert url.startswith(prefix)
        assert base64.b64decode(url[len(prefix):]).startswith(PNG_SIGNATURE)

    def test_empty_payload_rejected(self):
        with pytest.raises(ValueError):
            render_qr_data_url("")
