"""
Tareas asíncronas de Celery para el envío de correos electrónicos.
"""
import logging
from typing import Dict, Any, List, Optional
from app.core.celery import celery_app
from app.modules.email.service import email_service

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


@celery_app.task(bind=True, max_retries=3)
def send_template_email_task(
    self,
    to_emails: List[str],
    subject: str,
    template_name: str,
    context: Dict[str, Any],
):
    """
    Tarea asíncrona para envío de correos con template.
    """
    try:
        if not email_service.send_template_email(
            to_emails=to_emails,
            subject=subject,
            template_name=template_name,
            context=context,
        ):
            raise EmailDeliveryError("Failed to send template email")

        logger.info(f"Template email '{template_name}' sent successfully to {', '.join(to_emails)}")
        return {"status": "success", "template": template_name, "recipients": to_emails}

    except EmailDeliveryError as exc:
        logger.error(f"Template email sending failed: {str(exc)}")

        # Retry with exponential backoff
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        return {"status": "failed", "error": str(exc), "template": template_name, "recipients": to_emails}


# Tareas específicas para eventos de autenticación
@celery_app.task(bind=True, max_retries=3)
def send_verification_email_task(
    self,
    user_email: str,
    user_name: Optional[str],
    verification_token: str,
):
    """
    Enviar correo de verificación de cuenta (el enlace vence en 24 horas).
    """
    context = {
        "user_name": user_name or user_email,
        "verification_url": f"{email_service.base_url}/verify-email?token={verification_token}",
        "support_email": email_service.from_email,
    }
    try:
        if not email_service.send_template_email(
            to_emails=[user_email],
            subject="Verify your email address",
            template_name="verification_email.html",
            context=context
        ):
            raise EmailDeliveryError("Failed to send verification email")

        return {"status": "success", "email": user_email}

    except EmailDeliveryError as exc:
        logger.error(f"Verification email failed: {str(exc)}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
        return {"status": "failed", "error": str(exc)}


@celery_app.task(bind=True, max_retries=3)
def send_password_reset_email_task(
    self,
    user_email: str,
    user_name: Optional[str],
    reset_token: str,
):
    """
    Enviar correo de restablecimiento de contraseña (el enlace vence en 1 hora).
    """
    context = {
        "user_name": user_name or user_email,
        "reset_url": f"{email_service.base_url}/reset-password?token={reset_token}",
        "support_email": email_service.from_email,
    }
    try:
        if not email_service.send_template_email(
            to_emails=[user_email],
            subject="Reset your password",
            template_name="password_reset_email.html",
            context=context
        ):
            raise EmailDeliveryError("Failed to send password reset email")

        return {"status": "success", "email": user_email}

    except EmailDeliveryError as exc:
        logger.error(f"Password reset email failed: {str(exc)}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
        return {"status": "failed", "error": str(exc)}
