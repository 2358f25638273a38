# app/services/dispatcher.py
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.config import Settings
from app.models import ScheduledTask, TaskType, utcnow
from app.services import handlers as h
from app.services.conversion import ConversionChecker
from app.services.email import EmailSender
from app.services.handlers import Handler, HandlerContext, TaskResult
from app.services.sequence import LeadSequence, OnboardingSequence
from app.services.task_store import TaskStore
from app.services.whatsapp import WhatsAppSender

log = logging.getLogger(__name__)

HANDLERS: Dict[TaskType, Handler] = {
    TaskType.CHECK_EMAIL_OPENED: h.handle_check_email_opened,
    TaskType.SEND_EMAIL_2: h.handle_send_email_2,
    TaskType.SEND_WHATSAPP_FINAL: h.handle_send_whatsapp_final,
    TaskType.SEND_ONBOARDING_EMAIL_1: h.handle_send_onboarding_email_1,
    TaskType.SEND_ONBOARDING_EMAIL_2: h.handle_send_onboarding_email_2,
    TaskType.SEND_ONBOARDING_EMAIL_3: h.handle_send_onboarding_email_3,
    TaskType.SEND_REMINDER: h.handle_noop,
    TaskType.CLEANUP: h.handle_noop,
}

_missing = [t.value for t in TaskType if t not in HANDLERS]
if _missing:
    raise RuntimeError(f"No handler registered for task type(s): {', '.join(_missing)}")


class Dispatcher:
    """Routes a claimed task to its handler and builds the per-sweep context."""

    def __init__(
        self,
        settings: Settings,
        email_sender: EmailSender,
        whatsapp_sender: WhatsAppSender,
        conversion_checker: ConversionChecker,
        handlers: Optional[Dict[TaskType, Handler]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.email = email_sender
        self.whatsapp = whatsapp_sender
        self.conversion = conversion_checker
        self.handlers = dict(handlers if handlers is not None else HANDLERS)
        self.clock = clock

    def store(self, session: Session) -> TaskStore:
        return TaskStore(
            session,
            default_max_attempts=self.settings.TASK_MAX_ATTEMPTS,
            backoff_minutes=self.settings.RETRY_BACKOFF_MINUTES,
            clock=self.clock,
        )

    def context(self, session: Session) -> HandlerContext:
        store = self.store(session)
        return HandlerContext(
            session=session,
            store=store,
            leads=LeadSequence(session, store, self.settings, clock=self.clock),
            onboarding=OnboardingSequence(session, store, self.settings, clock=self.clock),
            email=self.email,
            whatsapp=self.whatsapp,
            conversion=self.conversion,
            settings=self.settings,
            clock=self.clock,
        )

    def dispatch(self, task: ScheduledTask, ctx: HandlerContext) -> TaskResult:
        try:
            handler = self.handlers.get(TaskType(task.type))
        except ValueError:
            handler = None
        if handler is None:
            log.error("[dispatcher] unknown task type %r (task %s)", task.type, task.id)
            return TaskResult.failure(f"Unknown task type: {task.type}")
        return handler(task, ctx)


def build_dispatcher(settings: Settings, engine: Engine) -> Dispatcher:
    return Dispatcher(
        settings,
        EmailSender(settings),
        WhatsAppSender(settings),
        ConversionChecker(engine),
    )
