"""
User directory lookups for notification recipients.
"""

from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from certkeeper.models import User


class UserDirectory:
    """Resolves usernames and roles to mail addresses from the users table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_user_email(self, username: str) -> Optional[str]:
        result = await self.db.execute(select(User.email).where(User.username == username))
        return result.scalar_one_or_none() or None

    async def resolve_users_by_role(self, role: str) -> List[str]:
        # roles is a JSON list, so the membership test happens here rather than in SQL
        result = await self.db.execute(select(User.email, User.roles).order_by(User.username))
        return [email for email, roles in result.all() if email and role in (roles or [])]
