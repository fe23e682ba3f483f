"""The local user's display identity: loading, change detection and saving."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import ChatError, NotFoundError, SessionExpiredError, ValidationError
from .models import FileRef, User
from .query import KIND_USER
from .session import SessionContext, call_with_recovery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Profile:
    user_id: str
    identifier: str
    name: str = ""
    bio: str = ""
    avatar: Optional[FileRef] = None
    is_registered: bool = False

    @property
    def avatar_url(self) -> Optional[str]:
        return self.avatar.url if self.avatar is not None else None

    @classmethod
    def from_user(cls, user: User) -> "Profile":
        return cls(
            user_id=user.id,
            identifier=user.phone or user.identifier,
            name=user.display_name or "",
            bio=user.bio or "",
            avatar=user.avatar,
            is_registered=user.is_registered,
        )


@dataclass(frozen=True)
class AvatarUpload:
    data: bytes
    filename: str


@dataclass
class ProfileDraft:
    name: str
    bio: str = ""
    avatar: Optional[AvatarUpload] = None

    def changed_fields(self, loaded: Optional[Profile]) -> Tuple[str, ...]:
        if loaded is None:
            loaded = Profile(user_id="", identifier="")
        changed = []
        if self.name.strip() != loaded.name.strip():
            changed.append("name")
        if self.bio.strip() != loaded.bio.strip():
            changed.append("bio")
        if self.avatar is not None:
            changed.append("avatar")
        return tuple(changed)

    def has_changes(self, loaded: Optional[Profile]) -> bool:
        return bool(self.changed_fields(loaded))


@dataclass
class SaveResult:
    profile: Profile
    changed: Tuple[str, ...] = field(default=())
    avatar_failed: bool = False
    registered_now: bool = False


class ProfileStore:
    def __init__(self, context: SessionContext) -> None:
        self._context = context
        self.profile: Optional[Profile] = None

    async def load_profile(self, user_id: Optional[str] = None) -> Profile:
        own = user_id is None or (self._context.user is not None and user_id == self._context.user.id)
        target = user_id or self._context.require_user().id
        record = await call_with_recovery(self._context, lambda: self._context.backend.get(KIND_USER, target))
        user = User.from_record(record)
        profile = Profile.from_user(user)
        if own:
            self._context.user = user
            self.profile = profile
        return profile

    async def _upload_avatar(self, avatar: AvatarUpload) -> Optional[FileRef]:
        try:
            return await call_with_recovery(
                self._context, lambda: self._context.backend.upload_file(avatar.data, avatar.filename)
            )
        except SessionExpiredError:
            raise
        except ChatError as exc:
            logger.warning("avatar upload failed, saving other changes: %s", exc.code)
            return None

    async def save_profile(self, draft: ProfileDraft, *, complete_registration: bool = False) -> SaveResult:
        """Save the fields of ``draft`` that differ from the loaded profile.

        The avatar is uploaded first; if that fails the remaining changes are
        still saved and ``avatar_failed`` is set. With ``complete_registration``
        the one-way ``is_registered`` flag is raised as the final step.
        """

        name = draft.name.strip()
        if not name:
            raise ValidationError("please enter your name")
        user = self._context.require_user()
        loaded = self.profile if self.profile is not None and self.profile.user_id == user.id else Profile.from_user(user)
        changed = draft.changed_fields(loaded)

        fields: Dict[str, Any] = {}
        if "name" in changed:
            fields["display_name"] = name
        if "bio" in changed:
            fields["bio"] = draft.bio.strip() or None
        avatar_failed = False
        if draft.avatar is not None:
            ref = await self._upload_avatar(draft.avatar)
            if ref is None:
                avatar_failed = True
                changed = tuple(item for item in changed if item != "avatar")
            else:
                fields["avatar"] = ref.to_record()

        backend = self._context.backend
        record: Optional[Dict[str, Any]] = None
        if fields:
            record = await call_with_recovery(self._context, lambda: backend.save(KIND_USER, {"id": user.id, **fields}))

        registered_now = False
        if complete_registration and not loaded.is_registered:
            record = await call_with_recovery(
                self._context, lambda: backend.save(KIND_USER, {"id": user.id, "is_registered": True})
            )
            registered_now = True
            logger.info("profile setup completed for %s", user.identifier)

        if record is not None:
            updated = User.from_record(record)
            if updated.id != user.id:
                raise NotFoundError("saved profile does not belong to the signed-in user")
            self._context.user = updated
            self.profile = Profile.from_user(updated)
        return SaveResult(
            profile=self.profile or loaded,
            changed=changed,
            avatar_failed=avatar_failed,
            registered_now=registered_now,
        )
