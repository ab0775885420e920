"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.message import Message
from src.models.message_click import MessageClick

__all__ = [
    "Message",
    "MessageClick",
]
