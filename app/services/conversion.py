# app/services/conversion.py
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.models import Lead, User


@dataclass
class Conversion:
    converted: bool
    user_id: Optional[int] = None


class ConversionChecker:
    """
    Answers "has this lead become a registered user?".

    Read-only and opens its own short session, so it can run on the guard's
    worker thread without touching the sweep's session.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def check(self, lead_id: int) -> Conversion:
        with Session(self.engine) as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                return Conversion(converted=False)

            if lead.converted:
                return Conversion(converted=True, user_id=lead.converted_user_id)

            email = (lead.email or "").strip().lower()
            if not email:
                return Conversion(converted=False)

            user = session.exec(
                select(User).where(func.lower(User.email) == email).limit(1)
            ).first()
            if not user:
                return Conversion(converted=False)
            return Conversion(converted=True, user_id=user.id)
