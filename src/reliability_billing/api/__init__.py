"""
RELIABILITY BILLING - API Module

FastAPI server exposing:
- Subscriptions and plan catalogue
- Usage tracking and summaries
- Invoice generation and Stripe sync
- Gain-share calculation and approval
- Stripe webhooks
"""

from .server import AppState, app, create_app

__all__ = ["AppState", "app", "create_app"]
