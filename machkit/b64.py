"""Base64 encoding with standard alphabet and '=' padding."""

from __future__ import annotations

import base64

__all__ = ["base64_encode"]


def base64_encode(data: bytes | bytearray | memoryview) -> str:
    """Encode *data* as padded Base64 text of length ``4 * ceil(len / 3)``."""
    return base64.b64encode(bytes(data)).decode("ascii")