"""
Helpdesk Engine

Ticket lifecycle and technician assignment with:
- Status graph enforcement
- Exact technician load counters under concurrent requests
- Running performance metrics on resolution
- Append-only status history
- Post-commit notifications
"""

__version__ = "0.1.0"
