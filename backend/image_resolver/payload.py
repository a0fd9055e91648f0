"""
Image Payload

Resolved pixel data in a transport-agnostic form. The data URL produced by
`to_data_url()` is what the view layer embeds in the rendered document.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote_to_bytes

DEFAULT_CONTENT_TYPE = "image/jpeg"


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.data)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"

    @classmethod
    def from_data_url(cls, value: str) -> Optional["ImagePayload"]:
        """Decode a `data:` URL; returns None when it is malformed."""
        if not value.startswith("data:") or "," not in value:
            return None
        header, body = value[5:].split(",", 1)
        params = header.split(";")
        content_type = params[0] or "text/plain"
        try:
            if "base64" in params[1:]:
                data = base64.b64decode(body, validate=True)
            else:
                data = unquote_to_bytes(body)
        except (binascii.Error, ValueError):
            return None
        return cls(data=data, content_type=content_type)


def media_type(header_value: Optional[str]) -> str:
    """Content-Type header without parameters, lowercased."""
    return (header_value or "").split(";")[0].strip().lower()
