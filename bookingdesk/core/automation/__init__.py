"""
Automation Module

Reminder rules, settings/rule management, delivery retry and the
recurring scan scheduler.
"""

from bookingdesk.core.automation.rules import (
    DEFAULT_RULES,
    AutomationEngine,
    firing_window,
    render_template,
)
from bookingdesk.core.automation.settings import (
    get_appointment_settings,
    list_rules,
    sync_reminder_rules,
    update_appointment_settings,
    update_rule,
)
from bookingdesk.core.automation.retry import RetryCoordinator
from bookingdesk.core.automation.scheduler import (
    DailySchedule,
    IntervalSchedule,
    RecurringTask,
    Scheduler,
    build_scheduler,
)

__all__ = [
    # Rules
    "DEFAULT_RULES",
    "AutomationEngine",
    "firing_window",
    "render_template",
    # Settings
    "get_appointment_settings",
    "list_rules",
    "sync_reminder_rules",
    "update_appointment_settings",
    "update_rule",
    # Retry
    "RetryCoordinator",
    # Scheduler
    "DailySchedule",
    "IntervalSchedule",
    "RecurringTask",
    "Scheduler",
    "build_scheduler",
]
