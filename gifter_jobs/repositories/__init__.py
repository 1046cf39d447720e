"""Persistence helpers over SQLAlchemy sessions.

Functions take an open Session and never commit; callers own the transaction.
"""
