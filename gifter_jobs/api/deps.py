"""
Dependencies for database sessions, the job system and webhook authentication.
"""
import hmac
from typing import Generator, Optional
from fastapi import Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from gifter_jobs import config
from gifter_jobs.database import SessionLocal
from gifter_jobs.jobs.scheduler import Scheduler
from gifter_jobs.jobs.system import JobSystem
from gifter_jobs.utils import get_logger

logger = get_logger(__name__)

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

def get_job_system(request: Request) -> JobSystem:
    """Job system built in the application lifespan (503 until startup completes)."""
    system = getattr(request.app.state, "job_system", None)
    if system is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job system not available"
        )
    return system

def get_scheduler(request: Request) -> Optional[Scheduler]:
    return getattr(request.app.state, "scheduler", None)

def verify_internal_webhook(
    x_internal_webhook_secret: Optional[str] = Header(None, alias="X-Internal-Webhook-Secret")
) -> bool:
    """
    Check the shared secret on CMS webhooks.

    Raises:
        HTTPException: If a secret is configured and the header does not match
    """
    expected = config.INTERNAL_WEBHOOK_SECRET
    if not expected:
        return True
    if not x_internal_webhook_secret or not hmac.compare_digest(x_internal_webhook_secret, expected):
        logger.warning("Internal webhook rejected: invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret"
        )
    return True
