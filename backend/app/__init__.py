# backend/app/__init__.py
"""
Webhook notification delivery backend package.

This package contains:
- main: FastAPI application entrypoint
- webhooks: multi-tenant webhook delivery engine and admin API
- utils: environment variable helpers
"""
