"""
Módulo de email: envío SMTP con templates Jinja2 y tareas Celery.
"""

from .service import email_service
from .tasks import (
    send_template_email_task,
    send_verification_email_task,
    send_password_reset_email_task
)

__all__ = [
    'email_service',
    'send_template_email_task',
    'send_verification_email_task',
    'send_password_reset_email_task'
]
