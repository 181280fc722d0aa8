"""
OAuth2 bearer token middleware.

The middleware owns one `OAuthSession`. It attaches `Authorization: Bearer`
to every request, refreshes the token when it has expired locally or when the
server answers 401, and gives up after `AuthPolicy.max_trials` attempts.

Refreshes are single-flight: concurrent callers that need a new token all
wait on the same in-progress refresh instead of each hitting the token
endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from urllib.parse import urlencode

import httpx

from ..clients.pipeline import AsyncPipeline, Pipeline, Request, Response
from ..clients.transport import AsyncHTTPXResponder, HTTPXResponder
from ..exceptions import AuthExhaustedError, TokenRefreshFailedError, TokenResponseMalformedError
from ..policies import AuthPolicy
from ..sessions import OAuthSession

logger = logging.getLogger(__name__)

UNAUTHORIZED = 401

SessionT = TypeVar("SessionT", bound=OAuthSession)

Clock = Callable[[], datetime]
PersistHook = Callable[[Any], None]
AsyncPersistHook = Callable[[Any], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _OAuthMiddlewareBase(Generic[SessionT]):
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        session: SessionT,
        policy: AuthPolicy | None = None,
        clock: Clock = _utcnow,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_url = token_url
        self.policy = policy or AuthPolicy()
        self._session = session
        self._clock = clock

    @property
    def session(self) -> SessionT:
        """The current session value (immutable snapshot)."""
        return self._session

    def _token_request(self) -> Request:
        body = self._session.token_request_body(self.client_id, self._client_secret)
        return Request(
            method="POST",
            url=self.token_url,
            headers=(
                ("Content-Type", "application/x-www-form-urlencoded"),
                ("Accept", "application/json"),
            ),
            content=urlencode(body).encode("ascii"),
        )

    def _apply_token_response(self, response: Response) -> SessionT:
        if not response.is_success:
            raise TokenRefreshFailedError(self.token_url, response)
        try:
            payload = response.json()
        except ValueError as e:
            raise TokenResponseMalformedError("Token response is not valid JSON") from e
        session = self._session.apply_refresh_result(
            payload, now=self._clock(), margin=self.policy.expiry_margin
        )
        self._session = session
        logger.debug(f"Refreshed access token from {self.token_url}, expires at {session.expires_at}")
        return session

    @staticmethod
    def _authorize(req: Request, token: str) -> Request:
        return req.with_header("Authorization", f"Bearer {token}")


class OAuthMiddleware(_OAuthMiddlewareBase[SessionT]):
    """
    Synchronous OAuth middleware, safe to share between threads.

    Example:
        ```python
        auth = OAuthMiddleware(
            client_id="id",
            client_secret="secret",
            token_url="https://auth.example.com/oauth/token",
            session=ClientCredentialsSession(scope="read"),
        )
        with HTTPClient(ClientConfig(base_url="https://api.example.com", middleware=[auth])) as http:
            http.get_json("/things")
        ```
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        session: SessionT,
        policy: AuthPolicy | None = None,
        token_responder: Pipeline | None = None,
        persist: PersistHook | None = None,
        clock: Clock = _utcnow,
    ):
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            token_url=token_url,
            session=session,
            policy=policy,
            clock=clock,
        )
        self._owned_responder: HTTPXResponder | None = None
        if token_responder is None:
            self._owned_responder = HTTPXResponder(httpx.Client())
            token_responder = self._owned_responder
        self._token_responder = token_responder
        self._persist = persist
        self._lock = threading.Lock()
        self._pending: Future[str] | None = None

    def __call__(self, req: Request, next: Pipeline) -> Response:
        max_trials = self.policy.max_trials
        if max_trials == 0:
            raise AuthExhaustedError(req.url)

        token = self._token()
        for trial in range(1, max_trials + 1):
            response = next(self._authorize(req, token))
            if response.status_code != UNAUTHORIZED:
                return response
            logger.debug(f"Unauthorized [{req.method}:{req.url}] on trial {trial}/{max_trials}")
            if trial < max_trials:
                token = self.refresh()
        raise AuthExhaustedError(req.url)

    def _token(self) -> str:
        with self._lock:
            pending = self._pending
            session = self._session
        if pending is None and not session.is_expired(self._clock()):
            return session.access_token
        return self.refresh()

    def refresh(self) -> str:
        """
        Fetch a new access token, or join the refresh already in progress.

        Raises:
            TokenRefreshFailedError: The token endpoint returned non-2xx.
            TokenResponseMalformedError: The token endpoint body is unusable.
            TransportError: The token endpoint could not be reached.
        """
        with self._lock:
            pending = self._pending
            owner = pending is None
            if pending is None:
                pending = self._pending = Future()

        if owner:
            try:
                pending.set_result(self._run_refresh())
            except BaseException as e:
                pending.set_exception(e)
            finally:
                with self._lock:
                    self._pending = None
        return pending.result()

    def _run_refresh(self) -> str:
        logger.debug(f"Requesting access token from {self.token_url}")
        response = self._token_responder(self._token_request())
        session = self._apply_token_response(response)
        if self._persist is not None:
            try:
                self._persist(session)
            except Exception:
                logger.warning("Failed to persist OAuth session", exc_info=True)
        return session.access_token

    def close(self) -> None:
        if self._owned_responder is not None:
            self._owned_responder.close()


class AsyncOAuthMiddleware(_OAuthMiddlewareBase[SessionT]):
    """
    Asyncio OAuth middleware.

    The pending refresh is an `asyncio.Task` installed without an intervening
    `await`, so the check-and-install is atomic on the event loop. Callers
    wait through `asyncio.shield`; a cancelled caller leaves the shared
    refresh running for the others.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        session: SessionT,
        policy: AuthPolicy | None = None,
        token_responder: AsyncPipeline | None = None,
        persist: AsyncPersistHook | None = None,
        clock: Clock = _utcnow,
    ):
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            token_url=token_url,
            session=session,
            policy=policy,
            clock=clock,
        )
        self._owned_responder: AsyncHTTPXResponder | None = None
        if token_responder is None:
            self._owned_responder = AsyncHTTPXResponder(httpx.AsyncClient())
            token_responder = self._owned_responder
        self._token_responder = token_responder
        self._persist = persist
        self._pending: asyncio.Task[str] | None = None

    async def __call__(self, req: Request, next: AsyncPipeline) -> Response:
        max_trials = self.policy.max_trials
        if max_trials == 0:
            raise AuthExhaustedError(req.url)

        token = await self._token()
        for trial in range(1, max_trials + 1):
            response = await next(self._authorize(req, token))
            if response.status_code != UNAUTHORIZED:
                return response
            logger.debug(f"Unauthorized [{req.method}:{req.url}] on trial {trial}/{max_trials}")
            if trial < max_trials:
                token = await self.refresh()
        raise AuthExhaustedError(req.url)

    async def _token(self) -> str:
        if self._pending is None and not self._session.is_expired(self._clock()):
            return self._session.access_token
        return await self.refresh()

    async def refresh(self) -> str:
        """
        Fetch a new access token, or join the refresh already in progress.

        Raises:
            TokenRefreshFailedError: The token endpoint returned non-2xx.
            TokenResponseMalformedError: The token endpoint body is unusable.
            TransportError: The token endpoint could not be reached.
        """
        pending = self._pending
        if pending is None:
            pending = asyncio.create_task(self._run_refresh())
            self._pending = pending
            pending.add_done_callback(self._clear_pending)
        return await asyncio.shield(pending)

    def _clear_pending(self, task: asyncio.Task[str]) -> None:
        if self._pending is task:
            self._pending = None
        # Mark the outcome retrieved even when every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    async def _run_refresh(self) -> str:
        logger.debug(f"Requesting access token from {self.token_url}")
        response = await self._token_responder(self._token_request())
        session = self._apply_token_response(response)
        if self._persist is not None:
            try:
                await self._persist(session)
            except Exception:
                logger.warning("Failed to persist OAuth session", exc_info=True)
        return session.access_token

    async def close(self) -> None:
        if self._owned_responder is not None:
            await self._owned_responder.close()
