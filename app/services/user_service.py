from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import dialect_insert
from app.models.user import User


def external_user_id(provider: str, subject: str) -> str:
    return f"{provider}:{subject}"[:255]


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_external_id(self, external_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.external_id == external_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def upsert_native_identity(
        self,
        provider: str,
        subject: str,
        email: str,
        display_name: str,
    ) -> User:
        """
        Find or create the application user for a provider identity.

        Lookup order is external id, then email (which links the provider
        identity to an existing account), then insert. The insert is
        ON CONFLICT DO NOTHING so concurrent first sign-ins end up with a
        single row.
        """
        now = datetime.now(timezone.utc)
        external_id = external_user_id(provider, subject)

        user = await self.get_by_external_id(external_id)
        if user is not None:
            user.display_name = display_name
            if email:
                user.email = email
            user.last_login_at = now
            await self.db.flush()
            return user

        if email:
            existing_by_email = await self.get_by_email(email)
            if existing_by_email is not None:
                existing_by_email.external_id = external_id
                existing_by_email.display_name = display_name
                existing_by_email.last_login_at = now
                await self.db.flush()
                return existing_by_email

        insert = dialect_insert(self.db)
        await self.db.execute(
            insert(User)
            .values(
                external_id=external_id,
                email=email or None,
                display_name=display_name,
                is_active=True,
                first_seen_at=now,
                last_login_at=now,
            )
            .on_conflict_do_nothing()
        )
        user = await self.get_by_external_id(external_id)
        if user is None:
            raise RuntimeError(f"User {external_id} missing after insert")
        return user
