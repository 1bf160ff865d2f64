"""Workbook-backed user and role directory.

Authentication lives outside this package; the directory only answers who a
user id is, which role it holds and which locations it is assigned to.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from . import data_manager, log
from .constants import Role
from .order_store import WorkbookSession


@dataclass(frozen=True)
class UserProfile:
    """A user together with the role the directory resolved for it."""

    user: data_manager.UserRow
    role: Optional[Role]

    @property
    def user_id(self) -> int:
        return self.user.user_id

    @property
    def salesperson_code(self) -> str:
        return self.user.salesperson_code


class UserDirectory:
    def __init__(self, session: WorkbookSession) -> None:
        self._session = session

    async def get_user_by_id(self, user_id: int) -> Optional[data_manager.UserRow]:
        """Return the active user with ``user_id`` or ``None``."""
        for user in data_manager.iter_users(self._session.workbook):
            if user.user_id == user_id:
                if not user.is_active:
                    log.warning("User %s is inactive", user_id)
                    return None
                return user
        return None

    async def get_user_role_name(self, role_id: int) -> Optional[str]:
        for role in data_manager.iter_roles(self._session.workbook):
            if role.role_id == role_id:
                return role.role_name
        return None

    async def get_user_location_codes(self, user_id: int) -> List[str]:
        user = await self.get_user_by_id(user_id)
        return list(user.location_codes) if user else []

    async def get_profile(self, user_id: int) -> Optional[UserProfile]:
        """Resolve a user and map its role name onto :class:`Role`.

        Unknown role names resolve to ``None`` rather than failing, so such
        users fall back to the narrowest visibility.
        """
        user = await self.get_user_by_id(user_id)
        if user is None:
            return None
        role_name = await self.get_user_role_name(user.role_id)
        role = Role.from_name(role_name)
        if role is None:
            log.warning("User %s has unrecognised role '%s'", user_id, role_name)
        return UserProfile(user=user, role=role)

    async def add_user(
        self,
        user_name: str,
        role: Role,
        salesperson_code: str,
        location_codes: Iterable[str] = (),
    ) -> data_manager.UserRow:
        """Create an active user holding ``role`` at the given locations.

        Raises:
            ValueError: If the user name is blank or already taken.
            KeyError: If the workbook has no row for ``role``.
        """
        name = user_name.strip()
        if not name:
            raise ValueError("User name must not be blank")

        async with self._session.lock:
            users = list(data_manager.iter_users(self._session.workbook))
            if any(existing.user_name.lower() == name.lower() for existing in users):
                raise ValueError(f"User '{name}' already exists")
            role_row = next(
                (row for row in data_manager.iter_roles(self._session.workbook) if row.role_name == role.value),
                None,
            )
            if role_row is None:
                raise KeyError(f"Role not configured: {role.value}")

            record = data_manager.UserRow(
                user_id=max((existing.user_id for existing in users), default=0) + 1,
                user_name=name,
                role_id=role_row.role_id,
                salesperson_code=salesperson_code.strip(),
                location_codes=tuple(code.strip() for code in location_codes if code.strip()),
                is_active=True,
            )
            data_manager.append_user(self._session.workbook, record)
            await self._session.persist()
        log.info("Added user %s ('%s') with role %s", record.user_id, record.user_name, role.value)
        return record


__all__ = ["UserDirectory", "UserProfile"]
