"""Apple Reminders gateway using EventKit."""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from dataclasses import dataclass
import logging

from ledger_sync.core.exceptions import (
    RemindersError,
    AuthorizationError,
    EventKitImportError
)

# NSDateComponents reports unset fields as NSUndefinedDateComponent
_UNDEFINED_COMPONENT = 0x7FFFFFFFFFFFFFFF

_FREQUENCIES = {0: "daily", 1: "weekly", 2: "monthly", 3: "yearly"}
_WEEKDAYS = {1: "SU", 2: "MO", 3: "TU", 4: "WE", 5: "TH", 6: "FR", 7: "SA"}


@dataclass
class ReminderData:
    """Raw reminder fields as read from EventKit."""
    uuid: str
    title: str
    completed: bool
    due_date: Optional[str] = None
    priority: int = 0
    notes: Optional[str] = None
    list_id: Optional[str] = None
    list_name: Optional[str] = None
    external_id: Optional[str] = None
    url: Optional[str] = None
    recurrence: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    completion_date: Optional[str] = None


def _ns_date_to_iso(value) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value.timeIntervalSince1970(), tz=timezone.utc).isoformat()


def _component(components, name: str) -> Optional[int]:
    getter = getattr(components, name, None)
    if getter is None:
        return None
    number = int(getter())
    if number == _UNDEFINED_COMPONENT:
        return None
    return number


class RemindersGateway:
    """Gateway for Apple Reminders via EventKit."""

    FETCH_TIMEOUT = 30

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._store = None
        self._authorized = False

    def _ensure_eventkit(self):
        """Import EventKit lazily so the package imports on any platform."""
        try:
            import objc  # noqa: F401
            from EventKit import (
                EKEventStore, EKEntityTypeReminder,
                EKAuthorizationStatusAuthorized
            )
            from Foundation import NSRunLoop, NSDate

            self._EKEventStore = EKEventStore
            self._EKEntityTypeReminder = EKEntityTypeReminder
            self._EKAuthorizationStatusAuthorized = EKAuthorizationStatusAuthorized
            self._NSRunLoop = NSRunLoop
            self._NSDate = NSDate

        except ImportError as e:
            self.logger.error(f"EventKit import failed: {e}")
            raise EventKitImportError(
                "EventKit not available. Install the macOS extra:\n"
                "  pip install 'ledger-sync[macos]'\n"
                f"Import error details: {e}"
            )

    def _pump_until(self, done: threading.Event, timeout_seconds: float, what: str) -> None:
        """Spin the run loop until ``done`` is set or the timeout expires."""
        start_time = time.time()
        while not done.is_set():
            if time.time() - start_time > timeout_seconds:
                raise RemindersError(f"{what} timed out after {timeout_seconds} seconds")
            self._NSRunLoop.currentRunLoop().runUntilDate_(
                self._NSDate.dateWithTimeIntervalSinceNow_(0.1)
            )

    def _get_store(self):
        """Get or create the EventKit store, requesting access when needed."""
        if self._store:
            return self._store

        self._ensure_eventkit()

        try:
            self._store = self._EKEventStore.alloc().init()
        except Exception as e:
            self.logger.error(f"Failed to create EventKit store: {e}")
            raise RemindersError(f"Failed to initialize EventKit store: {e}")

        status = int(self._EKEventStore.authorizationStatusForEntityType_(
            self._EKEntityTypeReminder
        ))
        if status == int(self._EKAuthorizationStatusAuthorized):
            self._authorized = True
            return self._store
        if status == 1:
            raise AuthorizationError("Access to Reminders is restricted by system policy.")
        if status == 2:
            raise AuthorizationError(
                "Access to Reminders was previously denied.\n"
                "Enable it under System Settings > Privacy & Security > Reminders."
            )

        self.logger.info("Requesting EventKit authorization for reminders...")
        done = threading.Event()
        result = {'granted': False, 'error': None}

        def completion(granted, error):
            result['granted'] = granted
            result['error'] = error
            done.set()

        self._store.requestAccessToEntityType_completion_(
            self._EKEntityTypeReminder, completion
        )
        try:
            self._pump_until(done, 30, "Authorization request")
        except RemindersError as e:
            raise AuthorizationError(str(e))

        if not result['granted']:
            raise AuthorizationError(f"User denied access to Reminders: {result['error']}")

        self._authorized = True
        self.logger.info("EventKit authorization granted")
        return self._store

    def _calendars(self, store) -> list:
        return list(store.calendarsForEntityType_(self._EKEntityTypeReminder) or [])

    def _find_calendar(self, store, list_id: str):
        for cal in self._calendars(store):
            if str(cal.calendarIdentifier()) == list_id:
                return cal
        return None

    def _find_reminder(self, store, uuid: str):
        item = store.calendarItemWithIdentifier_(uuid)
        if item is None:
            self.logger.debug(f"Reminder {uuid} not found")
        return item

    def get_lists(self) -> List[Dict[str, str]]:
        """Get all reminder lists."""
        store = self._get_store()
        try:
            return [
                {'id': str(cal.calendarIdentifier()), 'name': str(cal.title() or 'Untitled')}
                for cal in self._calendars(store)
            ]
        except Exception as e:
            self.logger.error(f"Failed to fetch reminder lists: {e}")
            raise RemindersError(f"Failed to retrieve reminder lists: {e}")

    def get_default_list(self) -> Optional[Dict[str, str]]:
        """The list new reminders land in when none is given."""
        store = self._get_store()
        cal = store.defaultCalendarForNewReminders()
        if cal is None:
            return None
        return {'id': str(cal.calendarIdentifier()), 'name': str(cal.title() or 'Untitled')}

    def create_list(self, name: str) -> Optional[str]:
        """Create a reminder list in the default reminders source."""
        from EventKit import EKCalendar

        store = self._get_store()
        try:
            calendar = EKCalendar.calendarForEntityType_eventStore_(self._EKEntityTypeReminder, store)
            calendar.setTitle_(name)
            default_cal = store.defaultCalendarForNewReminders()
            if default_cal is not None:
                calendar.setSource_(default_cal.source())
            success, error = store.saveCalendar_commit_error_(calendar, True, None)
            if success:
                return str(calendar.calendarIdentifier())
            self.logger.error(f"Failed to save list '{name}': {error}")
        except Exception as e:
            self.logger.error(f"Failed to create list '{name}': {e}")
        return None

    def get_reminders(self, list_ids: Optional[List[str]] = None) -> List[ReminderData]:
        """Get reminders (open and completed) from the given lists, or all lists."""
        store = self._get_store()

        calendars = self._calendars(store)
        if list_ids:
            calendars = [c for c in calendars if str(c.calendarIdentifier()) in list_ids]
        if not calendars:
            self.logger.warning(f"No calendars found for list_ids: {list_ids}")
            return []

        predicate = store.predicateForRemindersInCalendars_(calendars)
        reminders = []
        done = threading.Event()

        def completion(fetched_reminders):
            if fetched_reminders:
                reminders.extend(list(fetched_reminders))
            done.set()

        store.fetchRemindersMatchingPredicate_completion_(predicate, completion)
        self._pump_until(done, self.FETCH_TIMEOUT, "Reminder fetch")

        result = []
        for rem in reminders:
            try:
                result.append(self._to_data(rem))
            except Exception as e:
                self.logger.warning(f"Failed to process reminder: {e}")
        return result

    def _to_data(self, rem) -> ReminderData:
        cal = rem.calendar()
        url = rem.URL()
        return ReminderData(
            uuid=str(rem.calendarItemIdentifier()),
            title=str(rem.title() or ''),
            completed=bool(rem.isCompleted()),
            due_date=self._read_due(rem.dueDateComponents()),
            priority=int(rem.priority() or 0),
            notes=str(rem.notes()) if rem.notes() else None,
            list_id=str(cal.calendarIdentifier()) if cal else None,
            list_name=str(cal.title() or 'Untitled') if cal else None,
            external_id=str(rem.calendarItemExternalIdentifier() or '') or None,
            url=str(url.absoluteString()) if url else None,
            recurrence=self._read_recurrence(rem),
            created_at=_ns_date_to_iso(rem.creationDate()),
            modified_at=_ns_date_to_iso(rem.lastModifiedDate()),
            completion_date=_ns_date_to_iso(rem.completionDate()),
        )

    @staticmethod
    def _read_due(components) -> Optional[str]:
        if components is None:
            return None
        year = _component(components, "year")
        month = _component(components, "month")
        day = _component(components, "day")
        if not (year and month and day):
            return None
        hour = _component(components, "hour")
        minute = _component(components, "minute")
        if hour is None:
            return f"{year:04d}-{month:02d}-{day:02d}"
        local = datetime(year, month, day, hour, minute or 0).astimezone()
        return local.astimezone(timezone.utc).isoformat()

    @staticmethod
    def _read_recurrence(rem) -> Optional[Dict[str, Any]]:
        if not rem.hasRecurrenceRules():
            return None
        rules = rem.recurrenceRules() or []
        if not rules:
            return None
        rule = rules[0]
        payload: Dict[str, Any] = {
            'frequency': _FREQUENCIES.get(int(rule.frequency()), 'daily'),
            'interval': int(rule.interval() or 1),
        }
        days = rule.daysOfTheWeek() or []
        if days:
            payload['daysOfWeek'] = [_WEEKDAYS.get(int(d.dayOfTheWeek()), '') for d in days]
        if rule.daysOfTheMonth():
            payload['daysOfMonth'] = [int(d) for d in rule.daysOfTheMonth()]
        if rule.monthsOfTheYear():
            payload['monthsOfYear'] = [int(m) for m in rule.monthsOfTheYear()]
        end = rule.recurrenceEnd()
        if end is not None:
            end_payload: Dict[str, Any] = {}
            if int(end.occurrenceCount() or 0) > 0:
                end_payload['count'] = int(end.occurrenceCount())
            if end.endDate() is not None:
                end_payload['until'] = int(end.endDate().timeIntervalSince1970() * 1000)
            if end_payload:
                payload['end'] = end_payload
        return payload

    @staticmethod
    def _due_components(due: datetime):
        from Foundation import NSDateComponents

        local = due.astimezone()
        components = NSDateComponents.alloc().init()
        components.setYear_(local.year)
        components.setMonth_(local.month)
        components.setDay_(local.day)
        components.setHour_(local.hour)
        components.setMinute_(local.minute)
        return components

    def create_reminder(self, title: str, list_id: Optional[str] = None,
                        **properties) -> Optional[str]:
        """Create a new reminder and return its identifier."""
        from EventKit import EKReminder

        store = self._get_store()
        try:
            reminder = EKReminder.reminderWithEventStore_(store)
            reminder.setTitle_(title)

            calendar = self._find_calendar(store, list_id) if list_id else None
            if list_id and calendar is None:
                self.logger.error(f"Calendar with ID '{list_id}' not found among available calendars")
                return None
            reminder.setCalendar_(calendar or store.defaultCalendarForNewReminders())

            self._apply_properties(store, reminder, properties)

            success, error = store.saveReminder_commit_error_(reminder, True, None)
            if success:
                return str(reminder.calendarItemIdentifier())
            self.logger.error(f"Failed to save reminder '{title}': error={error}")
        except Exception as e:
            self.logger.error(f"Failed to create reminder '{title}': {e}")
        return None

    def update_reminder(self, uuid: str, **updates) -> bool:
        """Update an existing reminder."""
        try:
            store = self._get_store()
            reminder = self._find_reminder(store, uuid)
            if reminder is None:
                return False

            self._apply_properties(store, reminder, updates)
            success, error = store.saveReminder_commit_error_(reminder, True, None)
            if not success:
                self.logger.error(f"Failed to save reminder {uuid}: {error}")
            return bool(success)
        except (EventKitImportError, AuthorizationError):
            raise
        except Exception as e:
            self.logger.error(f"Failed to update reminder: {e}")
            return False

    def _apply_properties(self, store, reminder, values: Dict[str, Any]) -> None:
        if 'title' in values:
            reminder.setTitle_(values['title'])
        if 'notes' in values:
            reminder.setNotes_(values['notes'] or None)
        if 'completed' in values:
            reminder.setCompleted_(bool(values['completed']))
        if 'priority' in values:
            reminder.setPriority_(int(values['priority'] or 0))
        if 'due_date' in values:
            due = values['due_date']
            reminder.setDueDateComponents_(self._due_components(due) if due else None)
        if values.get('calendar_id'):
            calendar = self._find_calendar(store, values['calendar_id'])
            if calendar is not None:
                reminder.setCalendar_(calendar)
            else:
                self.logger.warning(f"Calendar {values['calendar_id']} not found; item stays in place")

    def delete_reminder(self, uuid: str) -> bool:
        """Delete a reminder."""
        try:
            store = self._get_store()
            reminder = self._find_reminder(store, uuid)
            if reminder is None:
                return False
            success, error = store.removeReminder_commit_error_(reminder, True, None)
            return bool(success)
        except (EventKitImportError, AuthorizationError):
            raise
        except Exception as e:
            self.logger.error(f"Failed to delete reminder: {e}")
            return False
