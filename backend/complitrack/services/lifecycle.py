"""タスクのライフサイクル処理（upcoming → open 昇格、期日リマインド）

本番では Celery Beat から各スイープを呼ぶ。プロセス内で回す場合やテストでは
start() / tick() / stop() を使い、注入した clock で時間を進める。
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel
from complitrack.core.clock import Clock, ensure_utc, utcnow
from complitrack.core.config import settings
from complitrack.core.errors import DeliveryFailure, NotFoundFailure, ValidationFailure
from complitrack.models.reference import Resolved
from complitrack.models.task import Task, TaskPriority, TaskStatus, TERMINAL_STATUSES
from complitrack.models.user import User
from complitrack.services.notifications import ReminderType, reminder_message

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# (優先度, この日数以内なら通知, 種別)
PRIORITY_WINDOWS = (
    (TaskPriority.CRITICAL, 1, ReminderType.DUE_SOON),
    (TaskPriority.HIGH, 2, ReminderType.DUE_SOON),
    (TaskPriority.MEDIUM, 3, ReminderType.DUE_SOON),
    (TaskPriority.LOW, 7, ReminderType.UPCOMING),
)


def days_until_due(due_date: datetime, now: datetime) -> int:
    """期日までの日数（切り上げ）"""
    delta = ensure_utc(due_date) - ensure_utc(now)
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def classify_reminder(days: int, priority) -> Optional[ReminderType]:
    """上から順に最初に当てはまるルールで種別を決める。None は通知なし"""
    if days < 0:
        return ReminderType.OVERDUE
    if days == 0:
        return ReminderType.DUE_TODAY
    for window_priority, window_days, reminder_type in PRIORITY_WINDOWS:
        if priority == window_priority and days <= window_days:
            return reminder_type
    return None


@dataclass
class ReminderDecision:
    task: Task
    user: User
    reminder_type: ReminderType
    days_until_due: int


class PromotionSummary(BaseModel):
    promoted_count: int
    errors: int = 0


class ReminderSummary(BaseModel):
    total_eligible: int
    sent: int
    errors: int
    timestamp: datetime


class TaskLifecycleEngine:
    """昇格・リマインド・期限超過の3つの定期処理を持つ"""

    def __init__(
        self,
        store,
        notifier,
        clock: Clock = utcnow,
        promotion_interval: timedelta = timedelta(minutes=settings.PROMOTION_INTERVAL_MINUTES),
        reminder_interval: timedelta = timedelta(minutes=settings.REMINDER_INTERVAL_MINUTES),
        overdue_interval: timedelta = timedelta(minutes=settings.OVERDUE_INTERVAL_MINUTES),
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self._duties: Dict[str, Tuple[timedelta, Callable[[], BaseModel]]] = {
            "promotion": (promotion_interval, self.run_promotion_sweep),
            "reminder": (reminder_interval, self.run_reminder_sweep),
            "overdue": (overdue_interval, self.run_overdue_sweep),
        }
        self._next_run: Dict[str, datetime] = {}
        self._running = False

    # ---- 実行制御 ----

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """開始。各処理は次の tick() で初回実行される"""
        if self._running:
            return
        now = self.clock()
        self._next_run = {name: now for name in self._duties}
        self._running = True
        logger.info("Task lifecycle engine started")

    def stop(self) -> None:
        self._running = False
        self._next_run.clear()
        logger.info("Task lifecycle engine stopped")

    def tick(self) -> Dict[str, Any]:
        """期限の来た処理を実行し、処理名 → サマリーを返す"""
        if not self._running:
            return {}
        now = self.clock()
        results: Dict[str, Any] = {}
        for name, (interval, duty) in self._duties.items():
            next_run = self._next_run[name]
            if now < next_run:
                continue
            results[name] = duty()
            while next_run <= now:
                next_run += interval
            self._next_run[name] = next_run
        return results

    # ---- 昇格 ----

    def run_promotion_sweep(self) -> PromotionSummary:
        """scheduled_at を過ぎた upcoming タスクを open にする

        status=upcoming 条件付きの更新なので、並行実行や再実行でも二重昇格しない。
        """
        now = self.clock()
        try:
            tasks = self.store.find_tasks(statuses=[TaskStatus.UPCOMING], scheduled_before=now)
        except Exception as e:
            logger.error(f"Error in promotion sweep: {e}", exc_info=True)
            return PromotionSummary(promoted_count=0, errors=1)

        promoted = 0
        errors = 0
        for task in tasks:
            try:
                updated = self.store.update_task(
                    task.id,
                    {"status": TaskStatus.OPEN, "activated_at": now},
                    expected_status=TaskStatus.UPCOMING,
                )
                if updated is None:
                    logger.info(f"Task {task.id} was already promoted, skipping")
                    continue
                promoted += 1
                logger.info(f"Task status updated: {task.name} - {TaskStatus.OPEN.value}")
            except Exception as e:
                errors += 1
                logger.error(f"Failed to promote task {task.id}: {e}", exc_info=True)

        if promoted:
            logger.info(f"Updated {promoted} task(s) from upcoming to open")
        return PromotionSummary(promoted_count=promoted, errors=errors)

    # ---- リマインド ----

    def _recipients(self, tasks: List[Task]) -> Dict[int, User]:
        return self.store.find_users_by_ids(task.assignee_user_id for task in tasks)

    def reminders_due(self, now: Optional[datetime] = None) -> List[ReminderDecision]:
        """通知が必要なタスクと種別の一覧"""
        now = now or self.clock()
        tasks = self.store.find_tasks(exclude_statuses=TERMINAL_STATUSES, assigned_only=True)
        users = self._recipients(tasks)

        decisions = []
        for task in tasks:
            user = users.get(task.assignee_user_id)
            if not user or not user.email:
                continue
            days = days_until_due(task.due_date, now)
            reminder_type = classify_reminder(days, task.priority)
            if reminder_type is not None:
                decisions.append(ReminderDecision(task, user, reminder_type, days))
        return decisions

    def reminder_status(self) -> Dict[str, Any]:
        """送信せずに、いま通知対象となるタスクと各処理の間隔を返す"""
        decisions = self.reminders_due()
        return {
            "total_tasks_needing_reminders": len(decisions),
            "tasks": [
                {
                    "task_id": decision.task.id,
                    "task_name": decision.task.name,
                    "assigned_to": decision.user.name or "Unknown",
                    "due_date": decision.task.due_date.isoformat(),
                    "priority": decision.task.priority.value,
                    "status": decision.task.status.value,
                    "reminder_type": decision.reminder_type.value,
                    "days_until_due": decision.days_until_due,
                }
                for decision in decisions
            ],
            "schedule_minutes": {
                name: int(interval.total_seconds() // 60) for name, (interval, _) in self._duties.items()
            },
        }

    def run_reminder_sweep(self) -> ReminderSummary:
        """全ての未完了タスクを評価して必要なリマインドを送る"""
        now = self.clock()
        try:
            decisions = self.reminders_due(now)
        except Exception as e:
            logger.error(f"Failed to get tasks needing reminders: {e}", exc_info=True)
            return ReminderSummary(total_eligible=0, sent=0, errors=1, timestamp=now)

        logger.info(f"Found {len(decisions)} tasks needing reminders")
        return self._deliver_all(decisions, now)

    def run_overdue_sweep(self) -> ReminderSummary:
        """期日を過ぎた未完了タスクに緊急リマインドを送る"""
        now = self.clock()
        try:
            tasks = self.store.find_tasks(
                exclude_statuses=TERMINAL_STATUSES, due_before=now, assigned_only=True,
            )
            users = self._recipients(tasks)
        except Exception as e:
            logger.error(f"Error sending overdue task reminders: {e}", exc_info=True)
            return ReminderSummary(total_eligible=0, sent=0, errors=1, timestamp=now)

        decisions = [
            ReminderDecision(task, users[task.assignee_user_id], ReminderType.OVERDUE, days_until_due(task.due_date, now))
            for task in tasks
            if task.assignee_user_id in users and users[task.assignee_user_id].email
        ]
        if decisions:
            logger.info(f"Found {len(decisions)} overdue tasks, sending urgent reminders")
        return self._deliver_all(decisions, now)

    def _deliver_all(self, decisions: List[ReminderDecision], now: datetime) -> ReminderSummary:
        sent = 0
        errors = 0
        for decision in decisions:
            if self._deliver(decision):
                sent += 1
            else:
                errors += 1

        summary = ReminderSummary(total_eligible=len(decisions), sent=sent, errors=errors, timestamp=now)
        logger.info(f"Reminder summary: sent {sent}/{len(decisions)}, errors {errors}")
        return summary

    def _deliver(self, decision: ReminderDecision) -> bool:
        """1件送信。失敗は記録して False（再送はしない）"""
        task = decision.task
        try:
            client = None
            if isinstance(task.entity, Resolved):
                client = self.store.find_client_by_id(task.entity.id)
            message = reminder_message(task, decision.user, client, decision.reminder_type, decision.days_until_due)
            delivered = self.notifier.send(decision.user.email, message.subject, message.body)
        except DeliveryFailure as e:
            logger.error(f"Failed to send reminder for task {task.id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send reminder for task {task.id}: {e}", exc_info=True)
            return False

        if not delivered:
            logger.error(f"Notifier reported failure for task {task.id}")
            return False
        logger.info(
            f"Reminder sent for task {task.id} ({decision.reminder_type.value}, "
            f"days until due: {decision.days_until_due}, priority: {getattr(task.priority, 'value', task.priority)})"
        )
        return True

    def send_single_reminder(self, task_id: int, reminder_type=ReminderType.DUE_SOON) -> bool:
        """指定タスクに即時リマインドを送る"""
        try:
            reminder_type = ReminderType(reminder_type)
        except ValueError:
            raise ValidationFailure(
                "reminder_type",
                "Invalid reminder type",
                allowed=[member.value for member in ReminderType],
                provided=reminder_type,
            )

        task = self.store.find_task_by_id(task_id)
        if task is None:
            raise NotFoundFailure("task", task_id)

        user = None
        if isinstance(task.assignee, Resolved):
            user = self.store.find_user_by_id(task.assignee.id)
        if not user or not user.email:
            logger.error(f"Task {task_id} has no assigned user or email")
            return False

        decision = ReminderDecision(task, user, reminder_type, days_until_due(task.due_date, self.clock()))
        return self._deliver(decision)


def default_engine() -> TaskLifecycleEngine:
    """本番用（DBストア + SMTP）"""
    from complitrack.core.mailer import smtp_notifier
    from complitrack.services.store import SqlAlchemyStore

    return TaskLifecycleEngine(SqlAlchemyStore(), smtp_notifier)
