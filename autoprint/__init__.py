"""
Event Auto-Print Service

Discovers upcoming events from a remote API and prints each event's
attendee list a fixed time before it starts, exactly once, surviving
restarts and transient outages.

Features:
- Durable job state (SQLite) with crash recovery
- Per-event timers on APScheduler
- Circuit breaker and stale-cache fallback for the remote API
- Retry with exponential backoff
- Local print command or email-to-printer delivery
- Memory and health monitoring
- Webhook notifications and an hourly statistics report
"""

from autoprint.service import AutoPrintService
from autoprint.scheduler import JobScheduler
from autoprint.config import ServiceConfig

__version__ = "0.1.0"
__all__ = ["AutoPrintService", "JobScheduler", "ServiceConfig"]
