"""Remote adapters for the services entities are mirrored into.

This package contains concrete implementations of the RemoteAdapter
interface, one per entity type.
"""

from .google import (
    GoogleApiClient,
    GoogleCalendarObjectiveAdapter,
    GoogleCalendarTimeSlotAdapter,
    GoogleContactsAdapter,
    GoogleTasksAdapter,
)

__all__ = [
    'GoogleApiClient',
    'GoogleCalendarObjectiveAdapter',
    'GoogleCalendarTimeSlotAdapter',
    'GoogleContactsAdapter',
    'GoogleTasksAdapter',
    'google_adapters',
]


def google_adapters(api=None, task_list="@default", calendar_id="primary", time_zone="UTC"):
    """Build one adapter per entity type sharing a single API client."""
    api = api or GoogleApiClient()
    return [
        GoogleTasksAdapter(api, task_list=task_list),
        GoogleCalendarTimeSlotAdapter(api, calendar_id=calendar_id, time_zone=time_zone),
        GoogleCalendarObjectiveAdapter(api, calendar_id=calendar_id, time_zone=time_zone),
        GoogleContactsAdapter(api),
    ]
