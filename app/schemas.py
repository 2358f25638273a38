from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr


class TaskOut(BaseModel):
    id: int
    type: str
    owner_id: Optional[str] = None
    status: str
    scheduled_for: datetime
    attempts: int


class ScheduledOut(BaseModel):
    owner_id: str
    scheduled: List[TaskOut]


class CancelOut(BaseModel):
    owner_id: str
    cancelled: int


class LeadStartIn(BaseModel):
    # provider message id of email 1, for open tracking
    email_message_id: Optional[str] = None


class EmailEventIn(BaseModel):
    type: str                              # email.opened | email.clicked | email.delivered | email.bounced
    message_id: Optional[str] = None
    lead_id: Optional[int] = None
    email: Optional[EmailStr] = None
    created_at: Optional[datetime] = None


class EmailEventOut(BaseModel):
    ok: bool
    event: str
    lead_id: Optional[int] = None
    cancelled: int = 0
