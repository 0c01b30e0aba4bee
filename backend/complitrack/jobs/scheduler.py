"""Celery Beat スケジューラータスク"""
import logging
from complitrack.celery_app import celery_app
from complitrack.services.lifecycle import default_engine

logger = logging.getLogger(__name__)


@celery_app.task(name="complitrack.jobs.scheduler.promote_upcoming_tasks")
def promote_upcoming_tasks():
    """scheduled_at を過ぎた upcoming タスクを open に昇格"""
    try:
        summary = default_engine().run_promotion_sweep()
        return summary.model_dump()
    except Exception as e:
        logger.error(f"Error in promote_upcoming_tasks: {e}", exc_info=True)
        return {"promoted_count": 0, "errors": 1}


@celery_app.task(name="complitrack.jobs.scheduler.scan_reminders")
def scan_reminders():
    """期日と優先度に応じたリマインドを送信"""
    try:
        summary = default_engine().run_reminder_sweep()
        return summary.model_dump(mode="json")
    except Exception as e:
        logger.error(f"Error in scan_reminders: {e}", exc_info=True)
        return None


@celery_app.task(name="complitrack.jobs.scheduler.scan_overdue")
def scan_overdue():
    """期限切れタスクに督促を送信"""
    try:
        summary = default_engine().run_overdue_sweep()
        return summary.model_dump(mode="json")
    except Exception as e:
        logger.error(f"Error in scan_overdue: {e}", exc_info=True)
        return None
