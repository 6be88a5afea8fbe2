"""
Tareas periódicas de membresías.
"""
import logging

from app.core.celery import celery_app
from app.database.database import SessionLocal
from app.modules.memberships.service import expire_due_memberships

logger = logging.getLogger(__name__)


@celery_app.task
def expire_memberships():
    """Ejecutada por Celery Beat cada hora."""
    db = SessionLocal()
    try:
        return expire_due_memberships(db)
    except Exception as e:
        db.rollback()
        logger.error(f"[Memberships] Error expiring memberships: {e}")
        raise
    finally:
        db.close()
