"""
User accounts stored as one list under "auth:users".

bcrypt hashing and checks run in a worker thread so they never stall the
event loop.
"""

import asyncio
import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from auth.security import hash_password, verify_password
from generation.schemas import utcnow
from storage.backends import StorageBackend

USERS_KEY = "auth:users"


class User(BaseModel):
    id: str
    email: str
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class EmailTakenError(ValueError):
    pass


class UserStore:
    def __init__(self, backend: StorageBackend):
        self.backend = backend

    async def _all(self) -> List[User]:
        data = await self.backend.get_json(USERS_KEY) or []
        return [User.model_validate(u) for u in data]

    async def get_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        return next((u for u in await self._all() if u.email == email), None)

    async def get(self, user_id: str) -> Optional[User]:
        return next((u for u in await self._all() if u.id == user_id), None)

    async def create(self, email: str, password: str) -> User:
        email = email.strip().lower()
        users = await self._all()
        if any(u.email == email for u in users):
            raise EmailTakenError(f"Email {email} is already registered")
        password_hash = await asyncio.to_thread(hash_password, password)
        user = User(id=uuid.uuid4().hex, email=email, password_hash=password_hash)
        users.append(user)
        await self.backend.set_json(USERS_KEY, [u.model_dump(mode="json") for u in users])
        return user

    async def authenticate(self, email: str, password: str) -> Optional[User]:
        user = await self.get_by_email(email)
        if user is None:
            return None
        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            return None
        return user
