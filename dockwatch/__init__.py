"""dockwatch - scheduled and event-driven job execution engine.

Runs update scans and auto-upgrade intents for watched container
applications, at most once per unit of work at a time.
"""

__app_name__ = "dockwatch"
__version__ = "0.4.0"
