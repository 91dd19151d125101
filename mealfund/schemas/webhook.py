"""
Payment gateway webhook acknowledgement schema.
"""

from __future__ import annotations

from typing import Optional

from mealfund.schemas.base import BaseSchema

__all__ = ["WebhookAck"]


class WebhookAck(BaseSchema):
    received: bool = True
    event: Optional[str] = None
    applied: bool = False
