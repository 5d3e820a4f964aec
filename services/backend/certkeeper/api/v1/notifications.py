"""
API endpoints for expiration notifications.
"""

from fastapi import APIRouter, Depends, status

from certkeeper.api.deps import get_mail_transport, get_scheduler
from certkeeper.schemas.certificate import JobAcceptedResponse
from certkeeper.schemas.notification import NotificationTestRequest, NotificationTestResponse
from certkeeper.services.mail_service import SmtpMailer
from certkeeper.services.notification_service import send_test_email
from certkeeper.tasks.scheduler import JobScheduler

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.post("/check", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def check_notifications(scheduler: JobScheduler = Depends(get_scheduler)):
    """
    Run the expiration notification check in the background.
    """
    if scheduler.trigger_notifications():
        return JobAcceptedResponse(message="Notification check started", accepted=True)
    return JobAcceptedResponse(message="Notification check already running", accepted=False)


@router.post("/test", response_model=NotificationTestResponse)
async def test_email(request: NotificationTestRequest, mailer: SmtpMailer = Depends(get_mail_transport)):
    sent = await send_test_email(str(request.to), mailer)
    message = "Test email sent" if sent else "Failed to send test email"
    return NotificationTestResponse(message=message, sent=sent)
