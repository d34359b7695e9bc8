# backend/transfer_notify/utils/__init__.py
