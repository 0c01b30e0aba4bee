"""単発リマインド送信ジョブ"""
import logging
from complitrack.celery_app import celery_app
from complitrack.core.errors import ComplianceError
from complitrack.services.lifecycle import default_engine

logger = logging.getLogger(__name__)


@celery_app.task(name="complitrack.jobs.send_reminder.send_reminder")
def send_reminder(task_id: int, kind: str = "due_soon") -> bool:
    """指定タスクの担当者へリマインドを1通送る"""
    try:
        sent = default_engine().send_single_reminder(task_id, kind)
    except ComplianceError as e:
        logger.warning(f"Reminder for task {task_id} rejected: {e}")
        return False
    except Exception as e:
        logger.error(f"Error in send_reminder: {e}", exc_info=True)
        return False

    logger.info(f"Reminder for task {task_id} (kind: {kind}) sent: {sent}")
    return sent
