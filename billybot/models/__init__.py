"""
Database models package.

Import all models here so Alembic can discover them for migrations.
"""

from billybot.models.email_account import EmailAccount

__all__ = [
    "EmailAccount",
]
