"""
Route descriptors and rate-limit bucket keys.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

# Minor parameters share a bucket; major ones (server, channel, webhook ids)
# stay literal so each resource gets its own.
_MINOR_PARAMS = re.compile(r"/messages/\d+")


def bucket_key_for(method: str, path: str) -> str:
    """Derive the rate-limit bucket key for ``method`` + ``path``."""
    path = path.split("?", 1)[0]
    return f"{method.upper()}:{_MINOR_PARAMS.sub('/messages/:id', path)}"


class Route(BaseModel):
    """An API endpoint plus the bucket it is rate limited under."""

    method: str
    path: str
    bucket_key: str

    model_config = {"frozen": True}

    @classmethod
    def build(cls, method: str, path: str) -> Route:
        method = method.upper()
        return cls(method=method, path=path, bucket_key=bucket_key_for(method, path))

    def url(self, base: str) -> str:
        return f"{base.rstrip('/')}{self.path}"
