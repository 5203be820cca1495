"""
API module for the polls AppView.

Read-only HTTP access to the projection. Writes never go through here;
they go to the user's repository via actions.PollActions.
"""

from .http_server import create_http_app, run_http_server

__all__ = [
    "create_http_app",
    "run_http_server",
]
