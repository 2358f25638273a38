# app/services/senders.py
from dataclasses import dataclass
from typing import Optional


@dataclass
class SendResult:
    """Outcome of one channel send. Senders return this instead of raising."""
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
