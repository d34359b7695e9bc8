# backend/transfer_notify/__init__.py
"""
Dealership vehicle-transfer notification backend package.

This package contains:
- main: FastAPI application entrypoint
- notifications: notification rule engine (conditions, recipients, templates, dispatch)
- utils: shared helpers (environment variables)
"""
