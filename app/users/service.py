from __future__ import annotations

import logging
import re
import secrets
import uuid
from datetime import datetime, timezone

import bcrypt
from fastapi import HTTPException, status
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import ActorUser
from app.core.authz import require_admin
from app.core.config import get_settings
from app.core.database import rollback_on_error, versioned_update
from app.crm.models import CRMAccount, CRMAccountWatcher, CRMContact, CRMDocument, CRMInvoice, CRMLead, CRMOpportunity
from app.crm.relations import BOARD_WATCHERS, add_link
from app.notifications import PostCommitEffects, notify
from app.projects.models import Board, BoardWatcher, Task, TaskComment
from app.projects.positions import next_position
from app.users.models import SystemModule, User, UserNotionIntegration, UserOpenAiKey
from app.users.schemas import (
    AdminUpdate,
    InviteRequest,
    LanguageUpdate,
    ModuleRead,
    ModuleToggleResponse,
    NotionUpdate,
    OpenAiKeyUpdate,
    PasswordChange,
    PasswordChangeResponse,
    PasswordResetRequest,
    PasswordResetResponse,
    ProfileUpdate,
    SignupRequest,
    UserRead,
    UserSummary,
)


logger = logging.getLogger("app.users")

PASSWORD_RESET_MESSAGE = "If this email exists in our system, a password reset email will be sent."
EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _password_bytes(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=get_settings().password_bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("ascii")


def verify_password(password: str, stored: str | None) -> bool:
    if not stored:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), stored.encode("ascii"))
    except ValueError:
        return False


def generate_password() -> str:
    return secrets.token_urlsafe(12)


COMMON_PASSWORDS = {"password", "12345678", "password123", "admin123", "qwerty123"}
_SPECIAL_CHARACTER = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>?]")


def password_problems(password: str) -> list[str]:
    problems: list[str] = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters long")
    if len(password) > 128:
        problems.append("Password must be less than 128 characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain at least one number")
    if not _SPECIAL_CHARACTER.search(password):
        problems.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        problems.append("Password is too common and easily guessable")
    return problems


class UserService:
    entity_type = "users.user"

    def signup(self, session: Session, dto: SignupRequest) -> UserRead:
        effects = PostCommitEffects()
        email = dto.email.lower()
        with rollback_on_error(session):
            self._ensure_unique(session, email, dto.username)
            first_user = session.scalar(select(func.count()).select_from(User)) == 0
            user = User(
                name=dto.name.strip(),
                username=dto.username,
                email=email,
                password_hash=hash_password(dto.password),
                user_language=dto.language,
                user_status="ACTIVE" if first_user else "PENDING",
                is_admin=first_user,
            )
            session.add(user)
            session.flush()

            self._record(user.id, user.id, "create", None, self._to_read(user))
            events.publish(
                events.build_envelope(
                    "users.user.signed_up",
                    user.id,
                    {"user_id": str(user.id), "user_status": user.user_status},
                )
            )
            if not first_user:
                admin_emails = session.scalars(
                    select(User.email).where(User.is_admin.is_(True), User.user_status == "ACTIVE")
                ).all()
                notify(
                    effects,
                    admin_emails,
                    "new_user_pending",
                    {"name": user.name, "email": user.email, "url": f"{get_settings().app_public_url}/admin/users"},
                    entity_type=self.entity_type,
                    entity_id=user.id,
                )
        session.commit()
        effects.run()
        return self._read(session, user.id)

    def list_users(self, session: Session, actor_user: ActorUser) -> list[UserRead]:
        require_admin(actor_user)
        rows = session.scalars(select(User).order_by(User.created_at.desc(), User.id)).all()
        return [self._to_read(row) for row in rows]

    def get_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserRead:
        if user_id != actor_user.user_id:
            require_admin(actor_user)
        return self._to_read(self._get(session, user_id))

    def update_profile(self, session: Session, actor_user: ActorUser, dto: ProfileUpdate) -> UserRead:
        user = self._get(session, actor_user.user_id)
        before = self._to_read(user)
        changes = {
            name: getattr(dto, name)
            for name in ("name", "username", "account_name", "avatar")
            if name in dto.model_fields_set
        }
        with rollback_on_error(session):
            if changes.get("username"):
                self._ensure_unique(session, None, changes["username"], exclude=user.id)
            versioned_update(session, User, user.id, dto.row_version, changes)
            after = self._read(session, user.id)
            self._record(actor_user.user_id, user.id, "update", before, after)
        session.commit()
        return after

    def set_language(self, session: Session, actor_user: ActorUser, dto: LanguageUpdate) -> UserRead:
        user = self._get(session, actor_user.user_id)
        with rollback_on_error(session):
            user.user_language = dto.language
            user.row_version += 1
            session.flush()
        session.commit()
        return self._read(session, user.id)

    def set_openai_key(self, session: Session, actor_user: ActorUser, dto: OpenAiKeyUpdate) -> dict[str, bool]:
        with rollback_on_error(session):
            session.execute(delete(UserOpenAiKey).where(UserOpenAiKey.user_id == actor_user.user_id))
            if dto.api_key:
                session.add(
                    UserOpenAiKey(
                        user_id=actor_user.user_id,
                        api_key=dto.api_key,
                        organization_id=dto.organization_id,
                    )
                )
            session.flush()
        session.commit()
        logger.info("users.openai_key.updated", extra={"actor_user_id": str(actor_user.user_id)})
        return {"configured": bool(dto.api_key)}

    def set_notion(self, session: Session, actor_user: ActorUser, dto: NotionUpdate) -> dict[str, bool]:
        with rollback_on_error(session):
            session.execute(delete(UserNotionIntegration).where(UserNotionIntegration.user_id == actor_user.user_id))
            session.add(
                UserNotionIntegration(
                    user_id=actor_user.user_id,
                    notion_api_key=dto.notion_api_key,
                    notion_db_id=dto.notion_db_id,
                )
            )
            session.flush()
        session.commit()
        return {"configured": True}

    def set_status(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, user_status: str) -> UserRead:
        require_admin(actor_user)
        user = self._get(session, user_id)
        before = self._to_read(user)
        with rollback_on_error(session):
            if user_status == "INACTIVE" and user.is_admin:
                self._ensure_other_admin(session, user.id)
            user.user_status = user_status
            user.row_version += 1
            session.flush()
            after = self._to_read(user)
            self._record(actor_user.user_id, user.id, "activate" if user_status == "ACTIVE" else "deactivate", before, after)
        session.commit()
        return self._read(session, user.id)

    def set_admin(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, dto: AdminUpdate) -> UserRead:
        require_admin(actor_user)
        user = self._get(session, user_id)
        before = self._to_read(user)
        with rollback_on_error(session):
            if user.is_admin and not dto.is_admin:
                self._ensure_other_admin(session, user.id)
            user.is_admin = dto.is_admin
            user.row_version += 1
            session.flush()
            self._record(actor_user.user_id, user.id, "grant_admin" if dto.is_admin else "revoke_admin", before, self._to_read(user))
        session.commit()
        return self._read(session, user.id)

    def invite(self, session: Session, actor_user: ActorUser, dto: InviteRequest) -> tuple[UserRead, list[str]]:
        require_admin(actor_user)
        effects = PostCommitEffects()
        email = dto.email.lower()
        password = generate_password()
        with rollback_on_error(session):
            self._ensure_unique(session, email, None)
            user = User(
                name=dto.name.strip(),
                email=email,
                password_hash=hash_password(password),
                user_language=dto.language,
                user_status="ACTIVE",
            )
            session.add(user)
            session.flush()
            self._record(actor_user.user_id, user.id, "invite", None, self._to_read(user))
            notify(
                effects,
                [email],
                "user_invited",
                {
                    "actor_name": actor_user.name or actor_user.email,
                    "email": email,
                    "password": password,
                    "url": get_settings().app_public_url,
                },
                entity_type=self.entity_type,
                entity_id=user.id,
            )
        session.commit()
        failures = effects.run()
        return self._read(session, user.id), [failure.name for failure in failures]

    def delete_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> None:
        """Remove a user, handing boards and tasks to the deleting admin and unassigning CRM records."""
        require_admin(actor_user)
        if user_id == actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot delete your own account")
        user = self._get(session, user_id)
        before = self._to_read(user)
        heir = actor_user.user_id

        with rollback_on_error(session):
            if user.is_admin:
                self._ensure_other_admin(session, user.id)

            boards = session.scalars(
                select(Board).where(Board.owner_id == user_id).order_by(Board.position.asc(), Board.created_at.asc())
            ).all()
            board_ids = [board.id for board in boards]
            # appended after the heir's own boards
            base = next_position(session, Board, "owner_id", heir)
            for offset, board in enumerate(boards):
                board.owner_id = heir
                board.position = base + offset
                board.updated_by = heir
                board.row_version += 1
            session.flush()
            session.execute(
                update(Task)
                .where(Task.assigned_user_id == user_id)
                .values(assigned_user_id=heir, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(Task)
                .where(Task.created_by == user_id)
                .values(created_by=heir)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(TaskComment)
                .where(TaskComment.user_id == user_id)
                .values(user_id=None)
                .execution_options(synchronize_session=False)
            )
            for model in (CRMAccount, CRMContact, CRMLead, CRMOpportunity):
                session.execute(
                    update(model)
                    .where(model.assigned_to == user_id)
                    .values(assigned_to=None)
                    .execution_options(synchronize_session=False)
                )
            session.execute(
                update(CRMInvoice)
                .where(CRMInvoice.assigned_user_id == user_id)
                .values(assigned_user_id=None)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(CRMDocument)
                .where(CRMDocument.assigned_user == user_id)
                .values(assigned_user=None)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(CRMDocument)
                .where(CRMDocument.created_by == user_id)
                .values(created_by=heir)
                .execution_options(synchronize_session=False)
            )

            session.execute(delete(BoardWatcher).where(BoardWatcher.user_id == user_id))
            session.execute(delete(CRMAccountWatcher).where(CRMAccountWatcher.user_id == user_id))
            session.execute(delete(UserOpenAiKey).where(UserOpenAiKey.user_id == user_id))
            session.execute(delete(UserNotionIntegration).where(UserNotionIntegration.user_id == user_id))
            for board_id in board_ids:
                add_link(session, BOARD_WATCHERS, board_id, heir)

            session.delete(user)
            session.flush()

            self._record(actor_user.user_id, user_id, "delete", before, None)
            events.publish(
                events.build_envelope(
                    "users.user.deleted",
                    actor_user.user_id,
                    {"user_id": str(user_id), "boards_transferred": len(board_ids)},
                )
            )
        session.commit()
        logger.info(
            "users.user.deleted",
            extra={"actor_user_id": str(actor_user.user_id), "entity_type": self.entity_type, "entity_id": str(user_id)},
        )

    def change_password(
        self,
        session: Session,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        dto: PasswordChange,
    ) -> PasswordChangeResponse:
        """Set a new password for the caller, or for any user when the caller is an admin.

        Users changing their own password must confirm the current one.
        """
        if dto.password != dto.cpassword:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Passwords do not match")
        problems = password_problems(dto.password)
        if problems:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Password does not meet security requirements", "requirements": problems},
            )
        is_self = user_id == actor_user.user_id
        if not is_self and not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only update your own password")
        user = self._get(session, user_id)

        if is_self and user.password_hash:
            if not dto.current_password:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Current password is required to set a new password",
                )
            if not verify_password(dto.current_password, user.password_hash):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
        if verify_password(dto.password, user.password_hash):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="New password must be different from current password",
            )

        with rollback_on_error(session):
            user.password_hash = hash_password(dto.password)
            user.row_version += 1
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=user.id,
                action="password_change",
                before=None,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
        session.commit()
        logger.info("users.password.changed", extra={"actor_user_id": str(actor_user.user_id), "entity_id": str(user.id)})
        return PasswordChangeResponse(message="Password updated successfully", user=UserSummary.model_validate(user))

    def reset_password(self, session: Session, dto: PasswordResetRequest) -> PasswordResetResponse:
        email = dto.email.lower()
        user = session.scalar(select(User).where(func.lower(User.email) == email))
        if user is None:
            return PasswordResetResponse(message=PASSWORD_RESET_MESSAGE)
        if user.user_status == "INACTIVE":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

        effects = PostCommitEffects()
        password = generate_password()
        with rollback_on_error(session):
            user.password_hash = hash_password(password)
            user.row_version += 1
            session.flush()
            audit.record(
                actor_user_id=user.id,
                entity_type=self.entity_type,
                entity_id=user.id,
                action="password_reset",
                before=None,
                after=None,
            )
            notify(
                effects,
                [user.email],
                "password_reset",
                {"password": password},
                entity_type=self.entity_type,
                entity_id=user.id,
            )
        session.commit()
        if effects.run():
            return PasswordResetResponse(message=PASSWORD_RESET_MESSAGE, warning=EMAIL_DELIVERY_FAILED)
        return PasswordResetResponse(message=PASSWORD_RESET_MESSAGE)

    def _get(self, session: Session, user_id: uuid.UUID) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return user

    def _read(self, session: Session, user_id: uuid.UUID) -> UserRead:
        user = session.scalar(select(User).where(User.id == user_id).execution_options(populate_existing=True))
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return self._to_read(user)

    def _to_read(self, user: User) -> UserRead:
        return UserRead.model_validate(user)

    def _ensure_unique(
        self,
        session: Session,
        email: str | None,
        username: str | None,
        exclude: uuid.UUID | None = None,
    ) -> None:
        clauses = []
        if email:
            clauses.append(func.lower(User.email) == email.lower())
        if username:
            clauses.append(User.username == username)
        if not clauses:
            return
        stmt = select(User.id).where(or_(*clauses))
        if exclude is not None:
            stmt = stmt.where(User.id != exclude)
        if session.scalar(stmt.limit(1)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")

    def _ensure_other_admin(self, session: Session, user_id: uuid.UUID) -> None:
        others = session.scalar(
            select(func.count())
            .select_from(User)
            .where(User.is_admin.is_(True), User.user_status == "ACTIVE", User.id != user_id)
        )
        if not others:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one admin must remain")

    def _record(
        self,
        actor_user_id: uuid.UUID,
        user_id: uuid.UUID,
        action: str,
        before: UserRead | None,
        after: UserRead | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=user_id,
            action=action,
            before=before.model_dump(mode="json") if before is not None else None,
            after=after.model_dump(mode="json") if after is not None else None,
        )


user_service = UserService()


class SystemModuleService:
    entity_type = "system.module"

    def list_modules(self, session: Session, actor_user: ActorUser) -> list[ModuleRead]:
        require_admin(actor_user)
        rows = session.scalars(select(SystemModule).order_by(SystemModule.position.asc(), SystemModule.name)).all()
        return [ModuleRead.model_validate(row) for row in rows]

    def set_enabled(
        self,
        session: Session,
        actor_user: ActorUser,
        module_id: uuid.UUID,
        enabled: bool,
    ) -> ModuleToggleResponse:
        require_admin(actor_user)
        module = session.get(SystemModule, module_id)
        if module is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Module not found")
        verb = "activated" if enabled else "deactivated"
        if module.enabled == enabled:
            return ModuleToggleResponse(
                message=f'Module "{module.name}" is already {"enabled" if enabled else "disabled"}',
                changed=False,
                module=ModuleRead.model_validate(module),
            )

        with rollback_on_error(session):
            module.enabled = enabled
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=module.id,
                action="activate" if enabled else "deactivate",
                before={"enabled": not enabled},
                after={"enabled": enabled},
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    f"system.module.{verb}",
                    actor_user.user_id,
                    {"module_id": str(module.id), "name": module.name},
                )
            )
        session.commit()
        return ModuleToggleResponse(
            message=f'Module "{module.name}" has been {verb} successfully',
            changed=True,
            module=ModuleRead.model_validate(module),
        )


module_service = SystemModuleService()
