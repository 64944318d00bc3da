"""User write/read use cases.

Writes commit locally first and only then emit their event; a failed
publish is swallowed by the emitter and never fails the write.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from minicrm.common.errors import ConflictError, NotFoundError
from minicrm.common.events import EventEmitter
from minicrm.common.logging import logger
from minicrm.common.topics import Topics, UserCreatedEvent, UserDeletedEvent, UserUpdatedEvent
from minicrm.services.user.models import User
from minicrm.services.user.schemas import UserCreateRequest, UserUpdateRequest


class UserService:
    """Owns user records and the `user.*` topics."""

    def __init__(self, session_factory, emitter: EventEmitter) -> None:
        self.session_factory = session_factory
        self.emitter = emitter

    def _email_taken(self, db, email: str) -> bool:
        return db.execute(select(User.id).where(User.email == email)).scalar_one_or_none() is not None

    def _get(self, db, user_id: str) -> User:
        user = db.get(User, user_id)
        if user is None:
            logger.warning("user not found user_id=%s", user_id)
            raise NotFoundError("User not found")
        return user

    async def create_user(self, req: UserCreateRequest) -> User:
        """Insert a user (409 on duplicate email) and emit `user.created`."""

        logger.info("creating user email=%s role=%s", req.email, req.role.value)
        with self.session_factory() as db:
            if self._email_taken(db, req.email):
                logger.warning("user creation failed, email already exists email=%s", req.email)
                raise ConflictError("User with this email already exists")
            user = User(
                first_name=req.first_name,
                last_name=req.last_name,
                email=req.email,
                role=req.role.value,
                is_active=True,
            )
            db.add(user)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError("User with this email already exists") from exc
            db.refresh(user)

        await self.emitter.emit(
            Topics.USER_CREATED,
            UserCreatedEvent(
                user_id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                role=user.role,
            ),
        )
        logger.info("user created user_id=%s", user.id)
        return user

    def get_user(self, user_id: str) -> User:
        with self.session_factory() as db:
            return self._get(db, user_id)

    def get_user_by_email(self, email: str) -> User:
        with self.session_factory() as db:
            user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None:
            logger.warning("user not found by email email=%s", email)
            raise NotFoundError("User not found")
        return user

    def list_users(self) -> list[User]:
        with self.session_factory() as db:
            return list(db.execute(select(User).order_by(User.created_at)).scalars().all())

    async def update_user(self, user_id: str, req: UserUpdateRequest) -> User:
        """Apply a partial update and emit `user.updated` with the supplied fields."""

        changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}
        logger.info("updating user user_id=%s fields=%s", user_id, sorted(changes))
        with self.session_factory() as db:
            user = self._get(db, user_id)
            new_email = changes.get("email")
            if new_email and new_email != user.email and self._email_taken(db, new_email):
                logger.warning("user update failed, email already exists user_id=%s email=%s", user_id, new_email)
                raise ConflictError("User with this email already exists")
            for field, value in changes.items():
                setattr(user, field, value.value if field == "role" else value)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError("User with this email already exists") from exc
            db.refresh(user)

        await self.emitter.emit(
            Topics.USER_UPDATED,
            UserUpdatedEvent(
                user_id=user.id,
                email=changes.get("email"),
                first_name=changes.get("first_name"),
                last_name=changes.get("last_name"),
                role=user.role if "role" in changes else None,
            ),
        )
        return user

    async def delete_user(self, user_id: str) -> None:
        logger.info("deleting user user_id=%s", user_id)
        with self.session_factory() as db:
            user = self._get(db, user_id)
            db.delete(user)
            db.commit()

        await self.emitter.emit(Topics.USER_DELETED, UserDeletedEvent(user_id=user_id))
        logger.info("user deleted user_id=%s", user_id)
