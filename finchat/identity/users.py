import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from finchat.db import Database
from finchat.errors import PersistenceError, wrap_error
from finchat.models import User
from finchat.providers.base import IdentityProfile

logger = logging.getLogger(__name__)


class UserStore:
    """Local user records keyed by the identity provider's user id (auth_id)."""

    def __init__(self, database: Database):
        self._db = database

    def get_by_auth_id(self, auth_id: str) -> Optional[User]:
        try:
            with self._db.session() as s:
                return s.scalar(select(User).where(User.auth_id == auth_id))
        except SQLAlchemyError as e:
            raise wrap_error("get user", e, auth_id=auth_id) from e

    def get(self, user_id: str) -> Optional[User]:
        try:
            with self._db.session() as s:
                return s.get(User, user_id)
        except SQLAlchemyError as e:
            raise wrap_error("get user", e, user_id=user_id) from e

    def _write(self, profile: IdentityProfile, overwrite: bool) -> User:
        with self._db.transaction() as s:
            user = s.scalar(select(User).where(User.auth_id == profile.auth_id))
            if user is None:
                user = User(auth_id=profile.auth_id, email=profile.email, first_name=profile.first_name)
                s.add(user)
            elif overwrite:
                user.email = profile.email
                user.first_name = profile.first_name
            s.flush()
            return user

    def upsert(self, profile: IdentityProfile) -> User:
        """
        Insert or update by auth_id. Safe to replay: a second call with the
        same profile leaves exactly one row with the same fields. A racing
        insert for the same auth_id is retried as an update.
        """
        try:
            try:
                return self._write(profile, overwrite=True)
            except IntegrityError:
                logger.info("upsert raced for auth_id=%s, retrying as update", profile.auth_id)
                return self._write(profile, overwrite=True)
        except SQLAlchemyError as e:
            raise wrap_error("upsert user", e, auth_id=profile.auth_id) from e

    def create_if_absent(self, profile: IdentityProfile) -> User:
        """
        Insert unless a row exists; never overwrites. Losing a creation race
        returns the winner's row.
        """
        try:
            try:
                return self._write(profile, overwrite=False)
            except IntegrityError:
                logger.info("user creation raced for auth_id=%s, reselecting", profile.auth_id)
                user = self.get_by_auth_id(profile.auth_id)
                if user is None:
                    raise PersistenceError(meta={"auth_id": profile.auth_id})
                return user
        except SQLAlchemyError as e:
            raise wrap_error("create user", e, auth_id=profile.auth_id) from e

    def delete_by_auth_id(self, auth_id: str) -> bool:
        """
        Delete the user (conversations and messages cascade). Returns False
        when nothing matched, which callers treat as success.
        """
        try:
            with self._db.transaction() as s:
                user = s.scalar(select(User).where(User.auth_id == auth_id))
                if user is None:
                    return False
                s.delete(user)
                return True
        except SQLAlchemyError as e:
            raise wrap_error("delete user", e, auth_id=auth_id) from e
