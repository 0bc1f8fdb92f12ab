"""Spotify session lifecycle: PKCE login, callback, refresh and logout.

One :class:`SessionManager` is built per application instance and handed to
everything that needs the session (route guards, the request gateway).  The
observable :class:`~auth.models.SessionSnapshot` is always derived from the
current credential, cached profile and in-flight operation; nothing else
stores a status.

Concurrency model
-----------------
Everything runs on a single asyncio loop.  Two invariants matter:

* Refresh is single-flight.  The first caller creates a task and every
  concurrent caller awaits that same task, so the token endpoint sees one
  refresh request no matter how many triggers coincide.
* ``logout()`` bumps an epoch.  Operations that started under an older epoch
  discard their results instead of writing them back.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Callable

import httpx

from auth import pkce, spotify_oauth
from auth.errors import (
    AuthError,
    AuthorizationDeniedError,
    ConfigurationError,
    CsrfMismatchError,
    InvalidTransitionError,
    NetworkUnavailableError,
    NoPendingAuthorizationError,
    ProfileFetchFailedError,
    UnauthenticatedError,
)
from auth.models import (
    AuthPhase,
    Credential,
    PendingAuthorization,
    Profile,
    SessionSnapshot,
    SessionStatus,
    derive_snapshot,
)
from auth.token_store import (
    CredentialStore,
    CredentialStoreError,
    FileCredentialStore,
    FilePendingAuthStore,
    MemoryCredentialStore,
    MemoryPendingAuthStore,
    PendingAuthStore,
)
from moodtunes.constants import AUTH_LOGGER, DEFAULT_REFRESH_FRACTION, DEFAULT_SCOPES
from moodtunes.env import AppConfig
from moodtunes.http import build_http_client

SnapshotListener = Callable[[SessionSnapshot], None]

MIN_REFRESH_DELAY_SECONDS = 1.0


def _mask(value: str, keep: int = 4) -> str:
    return f"{value[:keep]}****"


class SessionManager:
    def __init__(
        self,
        *,
        client_id: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        credential_store: CredentialStore | None = None,
        pending_store: PendingAuthStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        authorize_url: str = spotify_oauth.SPOTIFY_AUTHORIZE_URL,
        token_url: str = spotify_oauth.SPOTIFY_TOKEN_URL,
        profile_url: str = spotify_oauth.SPOTIFY_PROFILE_URL,
        refresh_fraction: float = DEFAULT_REFRESH_FRACTION,
        min_refresh_delay: float = MIN_REFRESH_DELAY_SECONDS,
        exchange_code_fn=spotify_oauth.exchange_code,
        refresh_token_fn=spotify_oauth.refresh_token,
        fetch_profile_fn=spotify_oauth.fetch_profile,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if not 0 < refresh_fraction < 1:
            raise ValueError("refresh_fraction must be between 0 and 1")

        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scopes = scopes or list(DEFAULT_SCOPES)
        self.credential_store = credential_store or MemoryCredentialStore()
        self.pending_store = pending_store or MemoryPendingAuthStore()
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.profile_url = profile_url

        self._owns_client = http_client is None
        self.http_client = http_client or build_http_client()
        self._refresh_fraction = refresh_fraction
        self._min_refresh_delay = min_refresh_delay
        self._exchange_code_fn = exchange_code_fn
        self._refresh_token_fn = refresh_token_fn
        self._fetch_profile_fn = fetch_profile_fn
        self._sleep = sleep
        self._logger = logger or AUTH_LOGGER

        self._credential: Credential | None = None
        self._profile: Profile | None = None
        # Hydration has not run yet; the session starts busy.
        self._phase: AuthPhase | None = AuthPhase.CHECKING_STORED
        self._error: str | None = None
        self._error_is_terminal = False
        self._epoch = 0
        self._closed = False

        self._refresh_task: asyncio.Task | None = None
        self._refresh_timer: asyncio.Task | None = None
        self._listeners: list[SnapshotListener] = []
        self._published = self.snapshot

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> "SessionManager":
        http_client = build_http_client(
            timeout=config.http_timeout,
            max_retries=config.max_retries,
            transport=transport,
        )
        manager = cls(
            client_id=config.client_id,
            redirect_uri=config.redirect_uri,
            scopes=config.scopes,
            credential_store=FileCredentialStore(config.credential_path),
            pending_store=FilePendingAuthStore(
                config.pending_auth_path,
                ttl_seconds=config.pending_auth_ttl_seconds,
            ),
            http_client=http_client,
            authorize_url=config.authorize_url,
            token_url=config.token_url,
            profile_url=f"{config.api_base_url.rstrip('/')}/me",
            refresh_fraction=config.refresh_fraction,
            **kwargs,
        )
        manager._owns_client = True
        return manager

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # -- observable state ------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return derive_snapshot(
            credential=self._credential,
            profile=self._profile,
            phase=self._phase,
            error=self._error,
            error_is_terminal=self._error_is_terminal,
        )

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = self.snapshot
        if snapshot == self._published:
            return
        previous, self._published = self._published, snapshot
        self._logger.info(
            "Session %s -> %s%s",
            previous.status.value,
            snapshot.status.value,
            f" ({snapshot.error})" if snapshot.error else "",
        )
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self._logger.exception("Session listener %r failed", listener)

    def _begin(self, phase: AuthPhase) -> None:
        self._phase = phase
        self._error = None
        self._error_is_terminal = False
        self._publish()

    def _enter_authenticated(self, credential: Credential, profile: Profile) -> None:
        self._credential = credential
        self._profile = profile
        self._phase = None
        self._error = None
        self._error_is_terminal = False
        self._publish()
        self._schedule_refresh(credential)

    def _fail(self, error: AuthError, *, terminal: bool) -> None:
        self._cancel_refresh_timer()
        self._credential = None
        self._profile = None
        self._phase = None
        self._error = error.reason
        self._error_is_terminal = terminal
        self._publish()

    def _ensure_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            raise UnauthenticatedError("Session ended while the operation was in flight.")

    def _require_client_id(self) -> None:
        if not self.client_id:
            raise ConfigurationError("SPOTIFY_CLIENT_ID is not configured.")

    # -- storage helpers -------------------------------------------------------

    async def _read_stored_credential(self) -> Credential | None:
        try:
            return await self.credential_store.get()
        except CredentialStoreError as error:
            self._logger.warning("Discarding unreadable stored credential: %s", error)
            await self.credential_store.delete()
            return None

    async def _persist(self, credential: Credential, epoch: int) -> None:
        await self.credential_store.set(credential)
        if epoch != self._epoch:
            # logout() ran while the write was suspended.
            await self.credential_store.delete()
            self._ensure_epoch(epoch)

    async def _fetch_profile(self, credential: Credential) -> Profile:
        return await self._fetch_profile_fn(
            credential.access_token,
            profile_url=self.profile_url,
            client=self.http_client,
        )

    async def _load_profile(self, credential: Credential) -> Profile:
        try:
            return await self._fetch_profile(credential)
        except ProfileFetchFailedError as error:
            if not credential.refresh_token:
                raise
            self._logger.info("Profile fetch failed (%s); refreshing once", error)

        await self.refresh(rejected_token=credential.access_token)
        if self._profile is None:
            raise ProfileFetchFailedError("Profile still unavailable after refresh.")
        return self._profile

    # -- transitions -----------------------------------------------------------

    async def start(self) -> SessionSnapshot:
        """Hydrate from the credential store and confirm it with a profile fetch."""
        epoch = self._epoch
        self._begin(AuthPhase.CHECKING_STORED)
        try:
            credential = await self._read_stored_credential()
            self._ensure_epoch(epoch)
            if credential is None:
                self._phase = None
                self._publish()
                return self.snapshot

            self._credential = credential
            if credential.is_expired():
                self._logger.info("Stored credential expired; refreshing before resuming")
                await self.refresh()
            else:
                profile = await self._load_profile(credential)
                self._ensure_epoch(epoch)
                self._enter_authenticated(self._credential or credential, profile)
        except NetworkUnavailableError as error:
            if epoch == self._epoch:
                # The stored credential may be fine; keep it for the next start.
                self._fail(error, terminal=True)
            raise
        except AuthError as error:
            if epoch == self._epoch:
                self._logger.info("Stored credential rejected: %s", error)
                await self.credential_store.delete()
                self._fail(error, terminal=False)
        return self.snapshot

    async def login(self) -> str:
        """Record a pending authorization and return the URL to send the user to."""
        status = self.snapshot.status
        if status not in (SessionStatus.UNAUTHENTICATED, SessionStatus.ERROR):
            raise InvalidTransitionError(f"Cannot start a login while {status.value}.")
        self._require_client_id()

        verifier, challenge = pkce.generate_challenge_pair()
        state = pkce.generate_anti_csrf_token()
        # Overwrites (and so invalidates) any earlier pending authorization.
        await self.pending_store.save(PendingAuthorization(state=state, code_verifier=verifier))

        self._logger.info("Starting Spotify authorization state=%s", _mask(state))
        return spotify_oauth.build_authorization_url(
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
            state=state,
            code_challenge=challenge,
            authorize_url=self.authorize_url,
        )

    async def handle_callback(
        self,
        code: str | None = None,
        state: str | None = None,
        *,
        error: str | None = None,
    ) -> SessionSnapshot:
        # Read-and-delete before anything else so the callback cannot be replayed.
        pending = await self.pending_store.consume()

        # Without a pending login nothing here belongs to this session.
        if pending is None:
            missing = NoPendingAuthorizationError()
            if not self.snapshot.is_authenticated:
                self._fail(missing, terminal=True)
            raise missing

        if not state or not hmac.compare_digest(state.encode(), pending.state.encode()):
            mismatch = CsrfMismatchError()
            self._logger.warning("Callback state mismatch; refusing to exchange code")
            self._fail(mismatch, terminal=True)
            raise mismatch

        if error:
            denied = AuthorizationDeniedError(error)
            self._fail(denied, terminal=True)
            raise denied

        if not code:
            malformed = AuthorizationDeniedError(
                "missing_parameters", "Callback is missing the authorization code."
            )
            self._fail(malformed, terminal=True)
            raise malformed

        epoch = self._epoch
        try:
            self._require_client_id()
            self._begin(AuthPhase.EXCHANGING_CODE)
            token = await self._exchange_code_fn(
                client_id=self.client_id,
                code=code,
                redirect_uri=self.redirect_uri,
                code_verifier=pending.code_verifier,
                token_url=self.token_url,
                client=self.http_client,
            )
            self._ensure_epoch(epoch)
            credential = token.to_credential()
            self._credential = credential
            self._profile = None
            await self._persist(credential, epoch)
            profile = await self._load_profile(credential)
            self._ensure_epoch(epoch)
        except AuthError as failure:
            if epoch == self._epoch:
                await self.credential_store.delete()
                self._fail(failure, terminal=True)
            raise

        self._logger.info("Spotify authorization completed (expires in %ss)", token.expires_in)
        self._enter_authenticated(self._credential or credential, profile)
        return self.snapshot

    async def refresh(self, *, rejected_token: str | None = None) -> Credential:
        """Obtain a new credential, sharing one in-flight refresh among all callers.

        ``rejected_token`` is the access token a caller saw rejected; if the
        session has already moved past it, the current credential is returned
        without another token request.
        """
        current = self._credential
        if (
            rejected_token is not None
            and current is not None
            and current.access_token != rejected_token
            and not current.is_expired()
        ):
            return current

        if self._refresh_task is None:
            if current is None or not current.refresh_token:
                raise UnauthenticatedError("No refresh token available; log in again.")
            self._require_client_id()
            task = asyncio.create_task(self._do_refresh(current, self._epoch))
            task.add_done_callback(self._refresh_done)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _refresh_done(self, task: asyncio.Task) -> None:
        # Retrieve the outcome so an unawaited failure is not reported as lost.
        if not task.cancelled():
            task.exception()

    async def _do_refresh(self, current: Credential, epoch: int) -> Credential:
        resume_phase = self._phase
        self._phase = AuthPhase.REFRESHING
        self._publish()
        try:
            token = await self._refresh_token_fn(
                client_id=self.client_id,
                refresh_token=current.refresh_token,
                token_url=self.token_url,
                client=self.http_client,
            )
            self._ensure_epoch(epoch)
            credential = token.to_credential(fallback_refresh_token=current.refresh_token)
            profile = self._profile
            if profile is None:
                profile = await self._fetch_profile(credential)
                self._ensure_epoch(epoch)
            await self._persist(credential, epoch)
        except NetworkUnavailableError:
            if epoch == self._epoch:
                self._phase = resume_phase
                self._publish()
            raise
        except UnauthenticatedError:
            raise
        except AuthError as error:
            if epoch == self._epoch:
                self._logger.warning("Token refresh failed; signing out: %s", error)
                await self.credential_store.delete()
                self._fail(error, terminal=False)
            raise
        finally:
            if self._refresh_task is asyncio.current_task():
                self._refresh_task = None

        self._logger.info(
            "Refreshed Spotify access token (expires in %ss)",
            int(credential.seconds_remaining()),
        )
        self._enter_authenticated(credential, profile)
        return credential

    async def get_valid_credential(self) -> Credential:
        """Return a credential fit for dispatch, refreshing first if it has expired."""
        credential = self._credential
        if credential is None:
            raise UnauthenticatedError()
        if credential.is_expired():
            if not credential.refresh_token:
                raise UnauthenticatedError("Access token expired and cannot be refreshed.")
            return await self.refresh()
        return credential

    async def logout(self) -> SessionSnapshot:
        self._epoch += 1
        self._cancel_refresh_timer()
        self._credential = None
        self._profile = None
        self._phase = None
        self._error = None
        self._error_is_terminal = False
        self._publish()
        await self.credential_store.delete()
        await self.pending_store.clear()
        self._logger.info("Logged out of Spotify session")
        return self.snapshot

    # -- proactive refresh -----------------------------------------------------

    def refresh_delay(self, credential: Credential) -> float:
        return max(
            self._min_refresh_delay,
            credential.seconds_remaining() * self._refresh_fraction,
        )

    def _schedule_refresh(self, credential: Credential) -> None:
        self._cancel_refresh_timer()
        if self._closed or not credential.refresh_token:
            return
        delay = self.refresh_delay(credential)
        self._refresh_timer = asyncio.create_task(self._run_refresh_timer(delay, self._epoch))
        self._logger.info("Proactive refresh scheduled in %.0fs", delay)

    def _cancel_refresh_timer(self) -> None:
        timer, self._refresh_timer = self._refresh_timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _run_refresh_timer(self, delay: float, epoch: int) -> None:
        await self._sleep(delay)
        if self._closed or epoch != self._epoch:
            return
        try:
            await self.refresh()
        except NetworkUnavailableError as error:
            self._logger.warning("Proactive refresh skipped, Spotify unreachable: %s", error)
        except AuthError as error:
            self._logger.warning("Proactive refresh failed: %s", error)

    async def aclose(self) -> None:
        self._closed = True
        pending = [task for task in (self._refresh_timer, self._refresh_task) if task is not None]
        self._cancel_refresh_timer()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_client:
            await self.http_client.aclose()
