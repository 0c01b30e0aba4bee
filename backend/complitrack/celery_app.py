"""Celeryアプリ初期化"""
from celery import Celery
from celery.schedules import crontab
from complitrack.core.config import settings
import pytz


def every(minutes: int) -> crontab:
    """分間隔を crontab に変換"""
    if minutes <= 1:
        return crontab(minute="*")
    if minutes % 60 == 0:
        hours = minutes // 60
        return crontab(minute=0, hour="*" if hours == 1 else f"*/{hours}")
    return crontab(minute=f"*/{minutes}")


# Celeryアプリ作成
celery_app = Celery(
    "complitrack",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "complitrack.jobs.scheduler",
        "complitrack.jobs.send_reminder",
        "complitrack.jobs.analyze_document",
    ],
)

# 設定
celery_app.conf.update(
    timezone=pytz.timezone(settings.TIMEZONE),
    enable_utc=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    task_time_limit=300,  # 5分
    task_soft_time_limit=240,  # 4分
)

# Beatスケジュール設定
celery_app.conf.beat_schedule = {
    "promote-upcoming-tasks": {
        "task": "complitrack.jobs.scheduler.promote_upcoming_tasks",
        "schedule": every(settings.PROMOTION_INTERVAL_MINUTES),
    },
    "scan-reminders": {
        "task": "complitrack.jobs.scheduler.scan_reminders",
        "schedule": every(settings.REMINDER_INTERVAL_MINUTES),
    },
    "scan-overdue": {
        "task": "complitrack.jobs.scheduler.scan_overdue",
        "schedule": every(settings.OVERDUE_INTERVAL_MINUTES),
    },
}
