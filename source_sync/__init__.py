"""Source Sync — keeps file, environment and HTTP sources live for local consumers.

Resolves the current value of every configured source, refreshes HTTP
sources on a schedule with retry and circuit breaking, persists the
source list atomically and pushes snapshots to the local UI and to
WebSocket clients.
"""

__version__ = "1.0.0"
__app_name__ = "Source Sync"
