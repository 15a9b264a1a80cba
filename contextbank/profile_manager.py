"""
Profile Lifecycle Manager.

Owns each user's active-profile pointer and the switch protocol that moves
records between the working view (namespace 0) and per-profile storage:

    1. read the current pointer and its switch_revision
    2. no-op if the target is already active
    3. flush: sync namespace 0 into the current profile's storage scope
    4. load: copy the target's storage scope into namespace 0
    5. flip is_active flags and compare-and-set the pointer on switch_revision

Steps 3-5 run in one transaction. A real profile P is stored under namespace
P; the Default Context (id 0) is stored under DEFAULT_ARCHIVE_NAMESPACE_ID so
its records never leak into a profile.
"""

import logging
import threading
import weakref
from typing import List, Optional

from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .audit import AuditSink, DatabaseAuditSink
from .config import settings
from .constants import (
    DEFAULT_ARCHIVE_NAMESPACE_ID,
    DEFAULT_NAMESPACE_ID,
    DEFAULT_PROFILE_DESCRIPTION,
    DEFAULT_PROFILE_NAME,
    RECORD_KIND_MESSAGE,
    RECORD_KIND_REFERENCE_ITEM,
)
from .context_store import ContextStore
from .database import SessionLocal, get_db_context, translate_storage_errors
from .db_models import DBProfile, DBProfileKnowledgeState, DBUser, utcnow
from .exceptions import (
    RETRYABLE_ERRORS,
    CannotDeleteActive,
    ConcurrentSwitch,
    DuplicateName,
    ProfileLocked,
    ProfileNotFound,
)
from .models import (
    Profile,
    ProfileCreate,
    ProfileCreated,
    ProfileKnowledgeState,
    ProfileSummary,
    SwitchResult,
)

logger = logging.getLogger(__name__)


def storage_scope(profile_id: int) -> int:
    """Namespace holding a profile's records while it is not active."""
    return DEFAULT_ARCHIVE_NAMESPACE_ID if profile_id == DEFAULT_NAMESPACE_ID else profile_id


def _stop_after_configured_attempts(retry_state) -> bool:
    """Stop once settings.switch_max_attempts is reached, read on every attempt."""
    return stop_after_attempt(settings.switch_max_attempts)(retry_state)


class ProfileLifecycleManager:
    """
    Create, list, switch and delete research profiles.

    Invariants:
    - At most one profile per user has is_active=True
    - users.active_profile_id changes only inside switch()
    - A failed switch leaves the user in the pre-switch namespace
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        store: Optional[ContextStore] = None,
        audit: Optional[AuditSink] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self.store = store or ContextStore(self._session_factory)
        self.audit = audit or DatabaseAuditSink(self._session_factory)
        # Entries vanish once no caller holds or waits on the lock
        self._user_locks = weakref.WeakValueDictionary()
        self._user_locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._user_locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def _ensure_user(self, user_id: int) -> None:
        """Create the user row (pointer at the Default Context) on first use."""
        try:
            with get_db_context(self._session_factory) as db:
                if db.get(DBUser, user_id) is None:
                    db.add(DBUser(id=user_id, active_profile_id=DEFAULT_NAMESPACE_ID, switch_revision=0))
        except IntegrityError:
            # Another caller created it first
            logger.debug(f"User {user_id} created concurrently")

    @staticmethod
    def _get_profile(db: Session, user_id: int, profile_id: int) -> DBProfile:
        profile = db.query(DBProfile).filter(
            DBProfile.id == profile_id,
            DBProfile.user_id == user_id,
        ).first()
        if profile is None:
            raise ProfileNotFound(user_id, profile_id)
        return profile

    @staticmethod
    def _check_name_free(db: Session, user_id: int, name: str, exclude_id: Optional[int] = None) -> None:
        query = db.query(DBProfile).filter(DBProfile.user_id == user_id, DBProfile.name == name)
        if exclude_id is not None:
            query = query.filter(DBProfile.id != exclude_id)
        if query.first() is not None:
            raise DuplicateName(name)

    @staticmethod
    def _default_profile(user_id: int, active: bool) -> Profile:
        return Profile(
            id=DEFAULT_NAMESPACE_ID,
            user_id=user_id,
            name=DEFAULT_PROFILE_NAME,
            description=DEFAULT_PROFILE_DESCRIPTION,
            is_active=active,
        )

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    @translate_storage_errors("create_profile")
    def create(self, user_id: int, name: str, description: Optional[str] = None) -> ProfileCreated:
        """
        Create an inactive, unlocked profile with an empty v1 knowledge state.

        Raises:
            DuplicateName: if the user already has a profile with this exact name
        """
        data = ProfileCreate(name=name, description=description)
        self._ensure_user(user_id)

        try:
            with get_db_context(self._session_factory) as db:
                self._check_name_free(db, user_id, data.name)
                profile = DBProfile(
                    user_id=user_id,
                    name=data.name,
                    description=data.description,
                    is_active=False,
                    is_locked=False,
                )
                profile.knowledge_state = DBProfileKnowledgeState(payload={}, version=1)
                db.add(profile)
                db.flush()

                created = ProfileCreated(
                    profile=Profile.model_validate(profile),
                    knowledge_state=ProfileKnowledgeState.model_validate(profile.knowledge_state),
                )
        except IntegrityError as e:
            raise DuplicateName(data.name) from e

        logger.info(f"User {user_id} created profile {created.profile.id} '{data.name}'")
        return created

    @translate_storage_errors("list_profiles")
    def list(self, user_id: int) -> List[ProfileSummary]:
        """All profiles of a user, preceded by the synthetic Default Context."""
        self._ensure_user(user_id)
        with get_db_context(self._session_factory) as db:
            user = db.get(DBUser, user_id)
            profiles = db.query(DBProfile).filter(
                DBProfile.user_id == user_id
            ).order_by(DBProfile.created_at, DBProfile.id).all()

            default = self._default_profile(
                user_id, active=user.active_profile_id == DEFAULT_NAMESPACE_ID
            )
            summaries = [ProfileSummary(**default.model_dump())]
            for profile in profiles:
                state = profile.knowledge_state
                summaries.append(ProfileSummary(
                    **Profile.model_validate(profile).model_dump(),
                    knowledge_version=state.version if state else None,
                    knowledge_updated=state.last_updated if state else None,
                ))
            return summaries

    @translate_storage_errors("get_profile")
    def get(self, user_id: int, profile_id: int) -> Profile:
        """A real profile, or the synthetic Default Context for id 0."""
        self._ensure_user(user_id)
        with get_db_context(self._session_factory) as db:
            if profile_id == DEFAULT_NAMESPACE_ID:
                user = db.get(DBUser, user_id)
                return self._default_profile(user_id, user.active_profile_id == DEFAULT_NAMESPACE_ID)
            return Profile.model_validate(self._get_profile(db, user_id, profile_id))

    def get_active(self, user_id: int) -> Profile:
        self._ensure_user(user_id)
        with get_db_context(self._session_factory) as db:
            active_id = db.get(DBUser, user_id).active_profile_id
        return self.get(user_id, active_id)

    @translate_storage_errors("update_profile")
    def update(
        self,
        user_id: int,
        profile_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Profile:
        """Rename and/or re-describe a real profile."""
        if name is not None:
            name = ProfileCreate(name=name).name

        try:
            with get_db_context(self._session_factory) as db:
                profile = self._get_profile(db, user_id, profile_id)
                if name is not None and name != profile.name:
                    self._check_name_free(db, user_id, name, exclude_id=profile_id)
                    profile.name = name
                if description is not None:
                    profile.description = description
                profile.updated_at = utcnow()
                db.flush()
                result = Profile.model_validate(profile)
        except IntegrityError as e:
            raise DuplicateName(name) from e

        return result

    @translate_storage_errors("lock_profile")
    def set_locked(self, user_id: int, profile_id: int, locked: bool) -> Profile:
        """Toggle the profile lock that blocks knowledge updates."""
        with get_db_context(self._session_factory) as db:
            profile = self._get_profile(db, user_id, profile_id)
            profile.is_locked = locked
            profile.updated_at = utcnow()
            db.flush()
            result = Profile.model_validate(profile)

        self.audit.record("profile", profile_id, "lock" if locked else "unlock")
        return result

    @translate_storage_errors("delete_profile")
    def delete(self, user_id: int, profile_id: int) -> None:
        """
        Delete an inactive profile with its knowledge state and stored records.

        Raises:
            CannotDeleteActive: if the profile is the active one
            ProfileNotFound: if the user has no such profile (including id 0)
        """
        self._ensure_user(user_id)
        with get_db_context(self._session_factory) as db:
            user = db.get(DBUser, user_id)
            profile = self._get_profile(db, user_id, profile_id)
            if profile.is_active or user.active_profile_id == profile_id:
                raise CannotDeleteActive(profile_id)

            removed = self.store.delete_namespace(user_id, profile_id, db=db)
            db.delete(profile)

        logger.info(f"User {user_id} deleted profile {profile_id} ({removed} records)")
        self.audit.record("profile", profile_id, "delete")

    # -------------------------------------------------------------------------
    # Knowledge State
    # -------------------------------------------------------------------------

    @translate_storage_errors("get_knowledge")
    def get_knowledge(self, user_id: int, profile_id: int) -> ProfileKnowledgeState:
        with get_db_context(self._session_factory) as db:
            profile = self._get_profile(db, user_id, profile_id)
            if profile.knowledge_state is None:
                profile.knowledge_state = DBProfileKnowledgeState(payload={}, version=1)
                db.flush()
            return ProfileKnowledgeState.model_validate(profile.knowledge_state)

    @translate_storage_errors("update_knowledge")
    def update_knowledge(self, user_id: int, profile_id: int, payload: dict) -> ProfileKnowledgeState:
        """
        Replace the profile's knowledge payload and bump its version.

        Raises:
            ProfileLocked: if the profile is locked
        """
        with get_db_context(self._session_factory) as db:
            profile = self._get_profile(db, user_id, profile_id)
            if profile.is_locked:
                raise ProfileLocked(profile_id)

            state = profile.knowledge_state
            if state is None:
                state = profile.knowledge_state = DBProfileKnowledgeState(payload={}, version=0)
            state.payload = dict(payload)
            state.version = (state.version or 0) + 1
            state.last_updated = utcnow()
            db.flush()
            result = ProfileKnowledgeState.model_validate(state)

        logger.info(f"Profile {profile_id} knowledge updated to v{result.version}")
        return result

    # -------------------------------------------------------------------------
    # Switch
    # -------------------------------------------------------------------------

    def switch(self, user_id: int, target_profile_id: int) -> SwitchResult:
        """
        Make ``target_profile_id`` (0 = Default Context) the active profile.

        Serialized per user in-process; across processes a concurrent switch
        is detected by the switch_revision compare-and-set and retried.

        Raises:
            ProfileNotFound: if the target is not one of the user's profiles
            ConcurrentSwitch: if retries are exhausted by competing switches
            StorageUnavailable: if storage keeps timing out
        """
        self._ensure_user(user_id)
        with self._user_lock(user_id):
            result = self._switch_with_retry(user_id, target_profile_id)

        if result.switched:
            logger.info(
                f"User {user_id} switched {result.previous_profile_id} -> {result.active_profile_id} "
                f"(migrated {result.migrated}, loaded {result.loaded})"
            )
            self.audit.record(
                "profile", target_profile_id, "switch", f"from profile {result.previous_profile_id}"
            )
        return result

    @retry(
        stop=_stop_after_configured_attempts,
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    @translate_storage_errors("switch_profile")
    def _switch_with_retry(self, user_id: int, target_profile_id: int) -> SwitchResult:
        with get_db_context(self._session_factory) as db:
            user = db.get(DBUser, user_id)
            current_id = user.active_profile_id
            revision = user.switch_revision

            if target_profile_id == DEFAULT_NAMESPACE_ID:
                target_name = DEFAULT_PROFILE_NAME
            else:
                target_name = self._get_profile(db, user_id, target_profile_id).name

            if target_profile_id == current_id:
                return SwitchResult(
                    user_id=user_id,
                    previous_profile_id=current_id,
                    active_profile_id=current_id,
                    active_profile_name=target_name,
                    switched=False,
                )

            migrated = self.store.sync_namespace(
                user_id, DEFAULT_NAMESPACE_ID, storage_scope(current_id), db=db
            )
            loaded = self.store.copy_namespace(
                user_id, storage_scope(target_profile_id), DEFAULT_NAMESPACE_ID, db=db
            )

            db.query(DBProfile).filter(
                DBProfile.user_id == user_id,
                DBProfile.is_active.is_(True),
            ).update({"is_active": False}, synchronize_session=False)
            if target_profile_id != DEFAULT_NAMESPACE_ID:
                db.query(DBProfile).filter(
                    DBProfile.id == target_profile_id,
                    DBProfile.user_id == user_id,
                ).update({"is_active": True}, synchronize_session=False)

            advanced = db.execute(
                sql_update(DBUser)
                .where(DBUser.id == user_id, DBUser.switch_revision == revision)
                .values(active_profile_id=target_profile_id, switch_revision=revision + 1)
            )
            if advanced.rowcount != 1:
                raise ConcurrentSwitch(user_id, revision)

        return SwitchResult(
            user_id=user_id,
            previous_profile_id=current_id,
            active_profile_id=target_profile_id,
            active_profile_name=target_name,
            migrated_reference_items=migrated[RECORD_KIND_REFERENCE_ITEM],
            migrated_messages=migrated[RECORD_KIND_MESSAGE],
            loaded_reference_items=loaded[RECORD_KIND_REFERENCE_ITEM],
            loaded_messages=loaded[RECORD_KIND_MESSAGE],
        )
