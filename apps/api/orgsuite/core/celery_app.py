from celery import Celery

from orgsuite.core.config import get_settings
from orgsuite.core.database import SessionLocal
from orgsuite.invitations.service import invitation_service

settings = get_settings()

celery_app = Celery("orgsuite_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "expire-stale-invitations": {
        "task": "orgsuite.tasks.expire_stale_invitations",
        "schedule": float(settings.invitation_expiry_sweep_seconds),
    },
}


@celery_app.task(name="orgsuite.tasks.expire_stale_invitations")
def expire_stale_invitations_task() -> int:
    session = SessionLocal()
    try:
        return invitation_service.expire_stale(session)
    finally:
        session.close()
