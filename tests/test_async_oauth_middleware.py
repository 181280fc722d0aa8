from __future__ import annotations

import asyncio
import gc
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs

import pytest

from restclient.clients.pipeline import Request, Response, compose_async
from restclient.exceptions import (
    AuthExhaustedError,
    TokenRefreshFailedError,
    TokenResponseMalformedError,
    TransportError,
)
from restclient.middleware.oauth import AsyncOAuthMiddleware
from restclient.policies import AuthPolicy
from restclient.sessions import ClientCredentialsSession, RefreshTokenSession

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
TOKEN_URL = "https://auth.example/oauth/token"
API_URL = "https://api.example/v1/books"


class FakeTokenEndpoint:
    """Issues T1, T2, ... unless configured to fail."""

    def __init__(
        self,
        *,
        status: int = 200,
        body: Any = None,
        raw: bytes | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.status = status
        self.body = body
        self.raw = raw
        self.error = error
        self.delay = delay
        self.requests: list[Request] = []

    async def __call__(self, req: Request) -> Response:
        self.requests.append(req)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.raw is not None:
            content = self.raw
        else:
            body = self.body or {
                "access_token": f"T{len(self.requests)}",
                "expires_in": 3600,
                "token_type": "bearer",
            }
            content = json.dumps(body).encode()
        return Response(self.status, content=content, request=req)


class FakeAPI:
    """Downstream responder answering with a scripted sequence of statuses."""

    def __init__(self, *statuses: int, default: int = 200):
        self.statuses = list(statuses)
        self.default = default
        self.requests: list[Request] = []

    async def __call__(self, req: Request) -> Response:
        self.requests.append(req)
        status = self.statuses.pop(0) if self.statuses else self.default
        return Response(status, content=b"{}", request=req)

    @property
    def authorizations(self) -> list[list[str]]:
        return [r.header_values("Authorization") for r in self.requests]


def _middleware(
    endpoint: FakeTokenEndpoint,
    *,
    session: Any = None,
    **kwargs: Any,
) -> AsyncOAuthMiddleware[Any]:
    return AsyncOAuthMiddleware(
        client_id="id",
        client_secret="secret",
        token_url=TOKEN_URL,
        session=session or ClientCredentialsSession(scope="books:read"),
        token_responder=endpoint,
        clock=lambda: T0,
        **kwargs,
    )


def _valid_session(token: str = "T0") -> ClientCredentialsSession:
    return ClientCredentialsSession(
        scope="books:read", access_token=token, expires_at=T0 + timedelta(hours=1)
    )


@pytest.mark.asyncio
async def test_cached_token_is_used_without_refresh() -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI()
    auth = _middleware(endpoint, session=_valid_session("cached"))

    response = await auth(Request("GET", API_URL), api)

    assert response.status_code == 200
    assert endpoint.requests == []
    assert api.authorizations == [["Bearer cached"]]


@pytest.mark.asyncio
async def test_existing_authorization_header_is_replaced() -> None:
    api = FakeAPI()
    auth = _middleware(FakeTokenEndpoint(), session=_valid_session("tok"))
    req = Request(
        "GET",
        API_URL,
        headers=(("Authorization", "Basic abc"), ("authorization", "Bearer stale"), ("Accept", "*/*")),
    )

    await auth(req, api)

    assert api.authorizations == [["Bearer tok"]]
    assert api.requests[0].header("Accept") == "*/*"
    assert req.header_values("Authorization") == ["Basic abc", "Bearer stale"]


@pytest.mark.asyncio
async def test_expired_session_triggers_refresh_with_form_body() -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI()
    auth = _middleware(endpoint)

    await auth(Request("GET", API_URL), api)

    assert len(endpoint.requests) == 1
    token_req = endpoint.requests[0]
    assert token_req.method == "POST"
    assert token_req.url == TOKEN_URL
    assert token_req.header("Content-Type") == "application/x-www-form-urlencoded"
    assert token_req.content is not None
    assert parse_qs(token_req.content.decode()) == {
        "client_id": ["id"],
        "client_secret": ["secret"],
        "grant_type": ["client_credentials"],
        "scope": ["books:read"],
    }
    assert api.authorizations == [["Bearer T1"]]
    assert auth.session.access_token == "T1"


@pytest.mark.asyncio
async def test_refresh_applies_expiry_margin() -> None:
    endpoint = FakeTokenEndpoint(body={"access_token": "T2", "expires_in": 100})
    auth = _middleware(endpoint)

    token = await auth.refresh()

    assert token == "T2"
    assert auth.session.access_token == "T2"
    assert auth.session.expires_at == T0 + timedelta(seconds=95)


@pytest.mark.asyncio
async def test_concurrent_requests_share_a_single_refresh() -> None:
    endpoint = FakeTokenEndpoint(delay=0.01)
    api = FakeAPI()
    auth = _middleware(endpoint)
    pipeline = compose_async([auth], api)

    responses = await asyncio.gather(*(pipeline(Request("GET", f"{API_URL}/{i}")) for i in range(5)))

    assert [r.status_code for r in responses] == [200] * 5
    assert len(endpoint.requests) == 1
    assert api.authorizations == [["Bearer T1"]] * 5


@pytest.mark.asyncio
async def test_concurrent_refresh_calls_share_one_token_request() -> None:
    endpoint = FakeTokenEndpoint(delay=0.01)
    auth = _middleware(endpoint, session=_valid_session())

    tokens = await asyncio.gather(auth.refresh(), auth.refresh(), auth.refresh())

    assert tokens == ["T1", "T1", "T1"]
    assert len(endpoint.requests) == 1

    # Once settled, the next refresh is a genuinely new one.
    assert await auth.refresh() == "T2"
    assert len(endpoint.requests) == 2


@pytest.mark.asyncio
async def test_always_unauthorized_exhausts_trials() -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI(default=401)
    auth = _middleware(endpoint, session=_valid_session())

    with pytest.raises(AuthExhaustedError) as exc_info:
        await auth(Request("GET", API_URL), api)

    assert exc_info.value.url == API_URL
    assert len(api.requests) == 3
    assert len(endpoint.requests) == 2
    assert api.authorizations == [["Bearer T0"], ["Bearer T1"], ["Bearer T2"]]


@pytest.mark.asyncio
async def test_unauthorized_once_then_success_refreshes_once() -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI(401, 200)
    auth = _middleware(endpoint, session=_valid_session())

    response = await auth(Request("GET", API_URL), api)

    assert response.status_code == 200
    assert len(api.requests) == 2
    assert len(endpoint.requests) == 1
    assert api.authorizations == [["Bearer T0"], ["Bearer T1"]]


@pytest.mark.asyncio
async def test_custom_trial_budget() -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI(default=401)
    auth = _middleware(endpoint, session=_valid_session(), policy=AuthPolicy(max_trials=1))

    with pytest.raises(AuthExhaustedError):
        await auth(Request("GET", API_URL), api)

    assert len(api.requests) == 1
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_zero_trials_fails_without_sending() -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI()
    auth = _middleware(endpoint, policy=AuthPolicy(max_trials=0))

    with pytest.raises(AuthExhaustedError):
        await auth(Request("GET", API_URL), api)

    assert api.requests == []
    assert endpoint.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 403, 404, 500, 503])
async def test_other_statuses_pass_through_untouched(status: int) -> None:
    endpoint = FakeTokenEndpoint()
    api = FakeAPI(status)
    auth = _middleware(endpoint, session=_valid_session())

    response = await auth(Request("GET", API_URL), api)

    assert response.status_code == status
    assert len(api.requests) == 1
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_transport_errors_from_next_are_not_retried() -> None:
    endpoint = FakeTokenEndpoint()
    calls: list[Request] = []

    async def failing(req: Request) -> Response:
        calls.append(req)
        raise TransportError("connection reset")

    auth = _middleware(endpoint, session=_valid_session())

    with pytest.raises(TransportError, match="connection reset"):
        await auth(Request("GET", API_URL), failing)

    assert len(calls) == 1
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_refresh_failure_reaches_every_joined_caller() -> None:
    endpoint = FakeTokenEndpoint(status=400, body={"error": "invalid_client"}, delay=0.01)
    api = FakeAPI()
    auth = _middleware(endpoint)
    before = auth.session

    results = await asyncio.gather(
        *(auth(Request("GET", API_URL), api) for _ in range(3)), return_exceptions=True
    )

    assert all(isinstance(r, TokenRefreshFailedError) for r in results)
    error = results[0]
    assert isinstance(error, TokenRefreshFailedError)
    assert error.url == TOKEN_URL
    assert error.status == 400
    assert "invalid_client" in str(error)
    assert len(endpoint.requests) == 1
    assert api.requests == []
    assert auth.session is before

    # The slot was cleared, so the next caller starts a new refresh.
    with pytest.raises(TokenRefreshFailedError):
        await auth(Request("GET", API_URL), api)
    assert len(endpoint.requests) == 2


@pytest.mark.asyncio
async def test_malformed_token_response_does_not_touch_session() -> None:
    endpoint = FakeTokenEndpoint(body={"access_token": "T2"}, delay=0.01)
    session = ClientCredentialsSession(
        scope="s", access_token="old", expires_at=T0 - timedelta(seconds=1)
    )
    auth = _middleware(endpoint, session=session)

    results = await asyncio.gather(
        *(auth(Request("GET", API_URL), FakeAPI()) for _ in range(3)), return_exceptions=True
    )

    assert all(isinstance(r, TokenResponseMalformedError) for r in results)
    assert len(endpoint.requests) == 1
    assert auth.session.access_token == "old"
    assert auth.session.expires_at == T0 - timedelta(seconds=1)


@pytest.mark.asyncio
async def test_non_json_token_response_is_malformed() -> None:
    auth = _middleware(FakeTokenEndpoint(raw=b"<html>oops</html>"))

    with pytest.raises(TokenResponseMalformedError):
        await auth.refresh()


@pytest.mark.asyncio
async def test_token_endpoint_transport_error_propagates() -> None:
    auth = _middleware(FakeTokenEndpoint(error=TransportError("dns failure")))

    with pytest.raises(TransportError, match="dns failure"):
        await auth(Request("GET", API_URL), FakeAPI())


@pytest.mark.asyncio
async def test_persist_hook_receives_refreshed_session() -> None:
    saved: list[Any] = []

    async def persist(session: Any) -> None:
        saved.append(session)

    auth = _middleware(FakeTokenEndpoint(), persist=persist)
    await auth.refresh()

    assert len(saved) == 1
    assert saved[0].access_token == "T1"
    assert saved[0] is auth.session


@pytest.mark.asyncio
async def test_persist_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    async def persist(session: Any) -> None:
        raise OSError("disk full")

    auth = _middleware(FakeTokenEndpoint(), persist=persist)

    with caplog.at_level(logging.WARNING, logger="restclient.middleware.oauth"):
        token = await auth.refresh()

    assert token == "T1"
    assert auth.session.access_token == "T1"
    assert "Failed to persist OAuth session" in caplog.text


@pytest.mark.asyncio
async def test_refresh_token_session_rotates_refresh_token() -> None:
    endpoint = FakeTokenEndpoint(
        body={"access_token": "A2", "expires_in": 60, "refresh_token": "R2"}
    )
    auth = _middleware(endpoint, session=RefreshTokenSession(scope="s", refresh_token="R1"))

    await auth(Request("GET", API_URL), FakeAPI())

    assert endpoint.requests[0].content is not None
    assert parse_qs(endpoint.requests[0].content.decode())["refresh_token"] == ["R1"]
    assert auth.session.refresh_token == "R2"
    assert auth.session.access_token == "A2"


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_refresh() -> None:
    endpoint = FakeTokenEndpoint(delay=0.05)
    auth = _middleware(endpoint)

    first = asyncio.create_task(auth.refresh())
    second = asyncio.create_task(auth.refresh())
    await asyncio.sleep(0)
    first.cancel()

    assert await second == "T1"
    assert first.cancelled()
    assert len(endpoint.requests) == 1


@pytest.mark.asyncio
async def test_out_of_range_lifetime_is_a_typed_error_for_every_caller() -> None:
    endpoint = FakeTokenEndpoint(body={"access_token": "T2", "expires_in": 10**12}, delay=0.01)
    auth = _middleware(endpoint)
    before = auth.session

    results = await asyncio.gather(
        *(auth(Request("GET", API_URL), FakeAPI()) for _ in range(2)), return_exceptions=True
    )

    assert all(isinstance(r, TokenResponseMalformedError) for r in results)
    assert auth.session is before


@pytest.mark.asyncio
async def test_failed_refresh_with_no_remaining_waiters_is_not_reported_unretrieved() -> None:
    loop = asyncio.get_running_loop()
    reported: list[dict[str, Any]] = []
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        auth = _middleware(FakeTokenEndpoint(status=500, delay=0.01))

        waiter = asyncio.create_task(auth.refresh())
        await asyncio.sleep(0)
        refresh_task = auth._pending
        assert refresh_task is not None
        waiter.cancel()

        # Wait without retrieving the outcome.
        await asyncio.wait({refresh_task})
        await asyncio.sleep(0)
        assert auth._pending is None
        assert waiter.cancelled()

        del refresh_task, waiter
        gc.collect()
        assert reported == []
    finally:
        loop.set_exception_handler(None)
