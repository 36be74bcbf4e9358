from .dispatcher import NotificationPayload
from .models import ScheduledReminder, Task


def task_reminder_payload(reminder: ScheduledReminder) -> NotificationPayload:
    return NotificationPayload(
        title=f"⏰ Task Reminder: {reminder.task_name}",
        body=f"Time: {reminder.task_time}",
        data={
            "type": "task_reminder",
            "reminderId": reminder.id,
            "taskId": reminder.task_id,
            "taskName": reminder.task_name,
            "taskTime": reminder.task_time,
            "userId": reminder.user_id,
            "click_action": "TASK_ACTIVITY",
        },
        channel_id="task_reminders",
    )


def task_completed_payload(task: Task) -> NotificationPayload:
    return NotificationPayload(
        title="✅ Task Completed",
        body=f"Great job on: {task.name}",
        data={
            "type": "task_completed",
            "taskId": task.id,
            "taskName": task.name,
            "userId": task.user_id,
        },
        channel_id="task_reminders",
    )


def task_test_payload(task: Task) -> NotificationPayload:
    """Same content as a scheduled reminder, sent on demand."""
    return NotificationPayload(
        title=f"⏰ Task Reminder: {task.name}",
        body=f"Time: {task.time}",
        data={
            "type": "task_reminder",
            "taskId": task.id,
            "taskName": task.name,
            "taskTime": task.time,
            "userId": task.user_id,
            "test": "true",
            "click_action": "TASK_ACTIVITY",
        },
        channel_id="task_reminders",
    )
