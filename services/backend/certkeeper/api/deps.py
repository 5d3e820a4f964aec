"""
Shared FastAPI dependencies.
"""

from fastapi import Request

from certkeeper.core.database import get_session_factory
from certkeeper.services.command_gateway import CommandGateway, get_command_gateway
from certkeeper.services.mail_service import SmtpMailer, get_mailer
from certkeeper.tasks.scheduler import JobScheduler


def get_gateway() -> CommandGateway:
    return get_command_gateway()


def get_mail_transport() -> SmtpMailer:
    return get_mailer()


def get_scheduler(request: Request) -> JobScheduler:
    """The application's job scheduler; created on demand when the lifespan did not start one."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        scheduler = JobScheduler(get_session_factory())
        request.app.state.scheduler = scheduler
    return scheduler
