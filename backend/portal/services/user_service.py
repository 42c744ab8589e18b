import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.database import upsert_insert
from portal.models.user import User


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_subject(self, subject: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.subject == subject))
        return result.scalar_one_or_none()

    async def upsert(self, subject: str, email: str, name: str, picture: str) -> User:
        """
        Create the user for ``subject`` or refresh its profile fields.

        Runs as a single INSERT ... ON CONFLICT (subject) DO UPDATE so two
        concurrent first logins for the same subject cannot both insert.
        ``id`` and ``created_at`` are only ever written by the insert branch.
        """
        if not subject:
            raise ValueError("subject is required")

        now = datetime.now(timezone.utc)
        stmt = upsert_insert(self.db, User).values(
            id=uuid.uuid4(),
            subject=subject,
            email=email,
            name=name,
            picture=picture,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["subject"],
            set_={
                "email": stmt.excluded.email,
                "name": stmt.excluded.name,
                "picture": stmt.excluded.picture,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        result = await self.db.scalars(
            stmt.returning(User),
            execution_options={"populate_existing": True},
        )
        return result.one()
