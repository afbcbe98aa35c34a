"""Apple Reminders (device store) integration."""

from .gateway import RemindersGateway, ReminderData
from .tasks import RemindersTaskManager

__all__ = ['RemindersGateway', 'ReminderData', 'RemindersTaskManager']
