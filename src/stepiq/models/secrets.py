"""User secret rows as seen by the worker (read-only)."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class UserSecret(BaseModel):
    """Encrypted provider key or template secret owned by a user.

    ``pipeline_id`` of ``None`` means global scope. A pipeline-scoped secret
    replaces a same-named global one for that pipeline.
    """

    id: str
    user_id: str
    pipeline_id: Optional[str] = None
    name: str
    encrypted_value: bytes
    key_version: int = 1
