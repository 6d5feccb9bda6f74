"""Calendar sync engine for Google Calendar, Outlook and CalDAV."""
