"""
HTTP Layer.

FastAPI application serving conversations and streaming turns as
Server-Sent Events.
"""

from agentloop.server.app import create_app

__all__ = ["create_app"]
