"""
Authentication service - session lifecycle and the signed-in user's profile.

The session's access token is pushed to the REST and realtime clients so every
request runs with the caller's authorization context.
"""

from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from infrastructure.config.settings import AuthConfig, get_config
from infrastructure.external.backend_client import eq, neq, get_backend_client
from infrastructure.external.backend_errors import (
    AuthorizationError,
    BackendError,
    ConnectivityError,
    RequestTimeoutError,
    ValidationError,
)
from infrastructure.external.realtime_client import ChangeEvent, ChangeKind, get_realtime_client
from infrastructure.monitoring.logging_service import get_logger, log_user_interaction
from infrastructure.resilience.retry_service import RetryPolicy, get_retry_service
from services.auth_service.models import AuthSession, AuthUser, UserProfile, default_avatar_url
from services.chat_service.models import SenderSummary, utc_now
from services.ui_service.notifications import Notifier, get_notifier, surface_error

EDITABLE_PROFILE_FIELDS = ("name", "username", "avatar_url", "status_message")
USERNAME_TAKEN = "Username is already taken. Please choose a different one."


class AuthManager:
    """
    Main authentication manager service.
    Handles sign-up, sign-in, sign-out and the profile of the signed-in user.
    """

    def __init__(self, backend=None, realtime=None, notifier: Optional[Notifier] = None,
                 retry_service=None, config: Optional[AuthConfig] = None):
        self.logger = get_logger(__name__)
        self.backend = backend or get_backend_client()
        self.realtime = realtime or get_realtime_client()
        self.notifier = notifier or get_notifier()
        self.retry_service = retry_service or get_retry_service()
        self.config = config or get_config().auth

        self.session: Optional[AuthSession] = None
        self.profile: Optional[UserProfile] = None
        self.loading = True
        self._profile_channel = None
        self._listeners: List[Callable[[Optional[AuthSession]], Any]] = []

    @property
    def user(self) -> Optional[AuthUser]:
        return self.session.user if self.session else None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    def current_sender(self) -> Optional[SenderSummary]:
        """Summary shown on the user's own messages, None when signed out"""
        if self.user is None:
            return None
        if self.profile is not None:
            return self.profile.summary()
        return SenderSummary(
            id=self.user.id,
            name="You",
            avatar_url=default_avatar_url(self.config.avatar_url_template, self.user.id),
        )

    def add_auth_listener(self, callback: Callable[[Optional[AuthSession]], Any]):
        self._listeners.append(callback)

    # Session

    async def initialize(self, session: Optional[AuthSession] = None) -> bool:
        """
        Probe the backend and restore a session if one is given

        Returns:
            False when the backend cannot be reached at all
        """
        self.logger.info("Initializing auth...")
        try:
            await self.retry_service.call(self.backend.health_check,
                                          timeout=self.config.health_check_timeout, name="health_check")
            self.logger.info("Backend connection verified")
        except RequestTimeoutError:
            self.logger.warning("Connection test timed out, continuing with auth initialization")
        except ConnectivityError as e:
            self.loading = False
            surface_error(e, self.notifier, context="initialize_auth")
            return False

        if session is not None and session.is_expired:
            self.session = session
            if await self.refresh():
                session = self.session
            else:
                self.logger.info("Stored session expired, sign in required")
                session = self.session = None

        if session is not None:
            await self._set_session(session)
        self.loading = False
        return True

    async def _set_session(self, session: Optional[AuthSession]):
        self.session = session
        token = session.access_token if session else None
        self.backend.set_access_token(token)
        await self.realtime.set_access_token(token)

        if session is not None:
            await self.fetch_profile()
            await self._subscribe_profile()
        else:
            self.profile = None
            await self._unsubscribe_profile()

        for callback in list(self._listeners):
            try:
                callback(session)
            except Exception as e:
                self.logger.error(f"Auth listener failed: {e}", exc_info=True)

    async def refresh(self) -> bool:
        """Exchange the refresh token for a new session"""
        if self.session is None or not self.session.refresh_token:
            return False
        try:
            payload = await self.backend.refresh_session(self.session.refresh_token)
        except BackendError as e:
            self.logger.warning(f"Session refresh failed: {e}")
            return False
        session = AuthSession.from_payload(payload)
        if session is None:
            return False
        self.session = session
        self.backend.set_access_token(session.access_token)
        await self.realtime.set_access_token(session.access_token)
        return True

    async def sign_up(self, email: str, password: str, name: str, username: str) -> Optional[UserProfile]:
        """
        Create an account and its profile row

        Returns:
            The new profile, or None if sign-up failed (already reported)
        """
        self.logger.info(f"Signing up user: {email}")
        try:
            if await self._username_taken(username):
                raise ValidationError(USERNAME_TAKEN, field="username")

            payload = await self.backend.sign_up(email, password)
            session = AuthSession.from_payload(payload)
            user = session.user if session else AuthUser.from_payload(payload.get("user") or payload)
            if session is not None:
                self.backend.set_access_token(session.access_token)

            row = {
                "id": user.id,
                "email": email,
                "name": name,
                "username": username,
                "avatar_url": default_avatar_url(self.config.avatar_url_template, username),
                "status_message": self.config.default_status_message,
            }
            stored = await self.retry_service.bounded(
                lambda: self.backend.insert("users", row),
                policy=RetryPolicy(max_retries=self.config.profile_create_retries,
                                   delay=self.config.profile_retry_delay),
                name="create_profile",
            ).run()
        except BackendError as e:
            self.logger.error(f"Sign up error: {e}")
            surface_error(e, self.notifier, context="sign_up")
            return None

        self.logger.info("User profile created")
        if session is not None:
            await self._set_session(session)
        self.profile = self.profile or UserProfile.from_row(stored)
        log_user_interaction(self.logger, "sign_up", user_id=user.id)
        self.notifier.success("Account created successfully!")
        return self.profile

    async def sign_in(self, email: str, password: str) -> Optional[AuthSession]:
        self.logger.info(f"Signing in user: {email}")
        try:
            payload = await self.backend.sign_in_with_password(email, password)
        except BackendError as e:
            self.logger.error(f"Sign in error: {e}")
            surface_error(e, self.notifier, context="sign_in")
            return None

        session = AuthSession.from_payload(payload)
        if session is None:
            surface_error(AuthorizationError("Sign in returned no session"), self.notifier, context="sign_in")
            return None
        await self._set_session(session)
        log_user_interaction(self.logger, "sign_in", user_id=session.user.id)
        self.notifier.success("Signed in successfully!")
        return session

    async def sign_out(self) -> bool:
        """
        Sign out; an expired session or an unreachable server still clears local state

        Returns:
            True when the local session was cleared
        """
        message = "Signed out successfully!"
        try:
            await self.backend.sign_out()
        except AuthorizationError:
            self.logger.info("Session already expired, clearing local state")
        except ConnectivityError:
            self.logger.info("Cannot reach server for sign out, clearing local state")
            message = "Signed out locally (server unreachable)"
        except BackendError as e:
            self.logger.error(f"Sign out error: {e}")
            surface_error(e, self.notifier, context="sign_out")
            return False

        user_id = self.user.id if self.user else None
        await self._set_session(None)
        log_user_interaction(self.logger, "sign_out", user_id=user_id)
        self.notifier.success(message)
        return True

    # Profile

    async def _username_taken(self, username: str, exclude_id: Optional[str] = None) -> bool:
        filters = [eq("username", username)]
        if exclude_id:
            filters.append(neq("id", exclude_id))
        try:
            existing = await self.backend.select_one("users", columns="username", filters=filters)
        except AuthorizationError:
            # Anonymous callers may not be able to read profiles before sign-up
            return False
        return existing is not None

    async def fetch_profile(self) -> Optional[UserProfile]:
        if self.user is None:
            return None
        user_id = self.user.id
        try:
            row = await self.retry_service.call(
                lambda: self.backend.select_one("users", filters=[eq("id", user_id)]),
                timeout=self.config.health_check_timeout,
                name="fetch_profile",
            )
        except AuthorizationError as e:
            self.logger.info(f"Auth error during profile fetch, user might be signing up: {e}")
            return None
        except BackendError as e:
            self.logger.error(f"Error fetching profile: {e}")
            surface_error(e, self.notifier, context="fetch_profile")
            return None

        self.profile = UserProfile.from_row(row) if row else None
        self.logger.info(f"Profile fetched: {'found' if row else 'not found'}")
        return self.profile

    async def update_profile(self, updates: Dict[str, Any]) -> bool:
        """
        Update editable profile fields

        Returns:
            True if the profile was updated
        """
        if self.user is None:
            surface_error(AuthorizationError("No user logged in"), self.notifier, context="update_profile")
            return False

        unknown = set(updates) - set(EDITABLE_PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Profile fields cannot be updated: {', '.join(sorted(unknown))}")

        user_id = self.user.id
        try:
            new_username = updates.get("username")
            if new_username and (self.profile is None or new_username != self.profile.username):
                if await self._username_taken(new_username, exclude_id=user_id):
                    raise ValidationError(USERNAME_TAKEN, field="username")

            await self.backend.update("users", {**updates, "last_active": utc_now().isoformat()},
                                      filters=[eq("id", user_id)])
        except BackendError as e:
            self.logger.error(f"Profile update error: {e}")
            surface_error(e, self.notifier, context="update_profile")
            return False

        if self.profile is not None:
            self.profile = replace(self.profile, **updates)
        log_user_interaction(self.logger, "profile_updated", user_id=user_id, fields=sorted(updates))
        self.notifier.success("Profile updated successfully!")
        return True

    async def _subscribe_profile(self):
        if self._profile_channel is not None or self.user is None:
            return
        channel = self.realtime.channel(f"profile:{self.user.id}")
        channel.on_postgres_changes("UPDATE", "users", self._on_profile_change, filter=f"id=eq.{self.user.id}")
        self._profile_channel = channel
        try:
            await channel.subscribe()
        except BackendError as e:
            self.logger.warning(f"Profile updates unavailable: {e}")

    async def _unsubscribe_profile(self):
        channel, self._profile_channel = self._profile_channel, None
        if channel is not None:
            await channel.unsubscribe()

    def _on_profile_change(self, event: ChangeEvent):
        if event.kind == ChangeKind.UPDATE and event.record.get("id"):
            self.profile = UserProfile.from_row(event.record)
            self.logger.info("Profile updated via realtime")
