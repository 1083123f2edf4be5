from celery import shared_task

from .services import dispatch_due_reminders, send_daily_digests


@shared_task(name="notifications.tasks.dispatch_due_reminders_task")
def dispatch_due_reminders_task():
    return dispatch_due_reminders()


@shared_task(name="notifications.tasks.send_daily_digests_task")
def send_daily_digests_task():
    return send_daily_digests()
