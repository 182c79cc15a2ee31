"""Tests for the per-source HTTP client."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from missionspine.core.errors import CircuitOpenError, ConfigError, HttpError, NetworkError
from missionspine.core.errors import TimeoutError as RequestTimeoutError
from missionspine.execution.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from missionspine.execution.retry import BackoffKind, RetryConfig
from missionspine.orchestration.auth import OAuth2Auth
from missionspine.orchestration.http import HttpClient, HttpRequest
from missionspine.orchestration.mission import AuthConfig, AuthType

BASE = "https://api.test"
FAST = RetryConfig(max_attempts=3, backoff=BackoffKind.CONSTANT, initial_delay=0.5)
TOKEN_URL = f"{BASE}/oauth/token"


def form(request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestRequests:
    @pytest.mark.asyncio
    async def test_json_response_and_headers(self, sleeper):
        """JSON bodies are parsed and auth plus default headers are sent."""
        auth = AuthConfig(type=AuthType.BEARER, token="t0k")
        with respx.mock(base_url=BASE) as router:
            route = router.get("/users").mock(return_value=httpx.Response(200, json=[{"id": 1}]))
            async with HttpClient(BASE, source="api", auth=auth, sleep=sleeper) as client:
                response = await client.request(HttpRequest("GET", "users", query={"page": "2"}))

        assert response.status == 200
        assert response.data == [{"id": 1}]
        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer t0k"
        assert request.headers["accept"] == "application/json"
        assert request.url.params["page"] == "2"

    @pytest.mark.asyncio
    async def test_api_key_header(self, sleeper):
        """api_key auth uses the configured header name."""
        auth = AuthConfig(type=AuthType.API_KEY, token="k", header="X-Token")
        with respx.mock(base_url=BASE) as router:
            route = router.post("/items").mock(return_value=httpx.Response(201, json={"ok": True}))
            async with HttpClient(BASE, auth=auth, sleep=sleeper) as client:
                await client.request(HttpRequest("post", "/items", body={"name": "x"}))

        request = route.calls.last.request
        assert request.headers["x-token"] == "k"
        assert json.loads(request.content) == {"name": "x"}

    @pytest.mark.asyncio
    async def test_empty_and_text_bodies(self, sleeper):
        """Empty bodies are None and non-JSON bodies are text."""
        with respx.mock(base_url=BASE) as router:
            router.delete("/a").mock(return_value=httpx.Response(204))
            router.get("/b").mock(return_value=httpx.Response(200, text="plain"))
            async with HttpClient(BASE, sleep=sleeper) as client:
                assert (await client.request(HttpRequest("DELETE", "/a"))).data is None
                assert (await client.request(HttpRequest("GET", "/b"))).data == "plain"


class TestRetries:
    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, sleeper):
        """5xx responses are retried with backoff."""
        with respx.mock(base_url=BASE) as router:
            route = router.get("/flaky").mock(side_effect=[
                httpx.Response(503),
                httpx.Response(200, json={"ok": True}),
            ])
            async with HttpClient(BASE, sleep=sleeper) as client:
                response = await client.request(HttpRequest("GET", "/flaky"), FAST)

        assert response.data == {"ok": True}
        assert route.call_count == 2
        assert sleeper.delays == [0.5]

    @pytest.mark.asyncio
    async def test_server_error_exhausts_attempts(self, sleeper):
        """The final 5xx surfaces as a retryable HttpError."""
        with respx.mock(base_url=BASE) as router:
            route = router.get("/down").mock(return_value=httpx.Response(500))
            async with HttpClient(BASE, sleep=sleeper) as client:
                with pytest.raises(HttpError) as excinfo:
                    await client.request(HttpRequest("GET", "/down"), FAST)

        assert excinfo.value.status == 500
        assert excinfo.value.retryable is True
        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, sleeper):
        """4xx other than 429 fail immediately."""
        with respx.mock(base_url=BASE) as router:
            route = router.get("/missing").mock(return_value=httpx.Response(404, json={"error": "nope"}))
            async with HttpClient(BASE, sleep=sleeper) as client:
                with pytest.raises(HttpError) as excinfo:
                    await client.request(HttpRequest("GET", "/missing"), FAST)

        assert excinfo.value.status == 404
        assert excinfo.value.body == {"error": "nope"}
        assert route.call_count == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self, sleeper):
        """Without a limiter, 429 waits for Retry-After."""
        with respx.mock(base_url=BASE) as router:
            router.get("/limited").mock(side_effect=[
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(200, json=[]),
            ])
            async with HttpClient(BASE, sleep=sleeper) as client:
                response = await client.request(HttpRequest("GET", "/limited"), FAST)

        assert response.status == 200
        assert sleeper.delays == [2.0]

    @pytest.mark.asyncio
    async def test_transport_errors_become_network_errors(self, sleeper):
        """Connection failures are retried, then raised as NetworkError."""
        with respx.mock(base_url=BASE) as router:
            route = router.get("/x").mock(side_effect=httpx.ConnectError("connection refused"))
            async with HttpClient(BASE, sleep=sleeper) as client:
                with pytest.raises(NetworkError, match="Network error"):
                    await client.request(HttpRequest("GET", "/x"), FAST)

        assert route.call_count == 3
        assert sleeper.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_client_default_attempts(self, sleeper):
        """Without a retry config the client's max_attempts applies."""
        with respx.mock(base_url=BASE) as router:
            route = router.get("/down").mock(return_value=httpx.Response(502))
            async with HttpClient(BASE, max_attempts=2, sleep=sleeper) as client:
                with pytest.raises(HttpError):
                    await client.request(HttpRequest("GET", "/down"))

        assert route.call_count == 2
        assert len(sleeper.delays) == 1

    @pytest.mark.asyncio
    async def test_timeouts_become_timeout_errors(self, sleeper):
        """Timeouts are retried, then raised as a retryable TimeoutError."""
        with respx.mock(base_url=BASE) as router:
            route = router.get("/slow").mock(side_effect=httpx.ReadTimeout("read timed out"))
            async with HttpClient(BASE, sleep=sleeper) as client:
                with pytest.raises(RequestTimeoutError, match="Timed out") as excinfo:
                    await client.request(HttpRequest("GET", "/slow"), FAST)

        assert excinfo.value.retryable is True
        assert route.call_count == 3


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_each_attempt_is_recorded(self, sleeper):
        """Retried transport failures each count, and the open circuit ends the retries."""
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2))
        with respx.mock(base_url=BASE) as router:
            route = router.get("/x").mock(side_effect=httpx.ConnectError("connection refused"))
            async with HttpClient(BASE, source="api", circuit_breakers=breakers, sleep=sleeper) as client:
                with pytest.raises(CircuitOpenError):
                    await client.request(HttpRequest("GET", "/x"), FAST)

        assert route.call_count == 2
        assert breakers.get_state("api") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_client_errors_are_not_counted(self, sleeper):
        """4xx responses leave the circuit closed."""
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        with respx.mock(base_url=BASE) as router:
            router.get("/missing").mock(return_value=httpx.Response(404))
            async with HttpClient(BASE, source="api", circuit_breakers=breakers, sleep=sleeper) as client:
                with pytest.raises(HttpError):
                    await client.request(HttpRequest("GET", "/missing"))

        assert breakers.get_state("api") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, sleeper, clock):
        """Successful attempts after the reset timeout close the circuit."""
        breakers = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=5, success_threshold=1),
            clock=clock,
        )
        breakers.record_failure("api", status_code=500)
        clock.advance(5)

        with respx.mock(base_url=BASE) as router:
            router.get("/users").mock(return_value=httpx.Response(200, json=[]))
            async with HttpClient(BASE, source="api", circuit_breakers=breakers, sleep=sleeper) as client:
                await client.request(HttpRequest("GET", "/users"))

        assert breakers.get_state("api") == CircuitState.CLOSED


class TestOAuth2:
    @pytest.mark.asyncio
    async def test_access_token_is_sent(self, sleeper):
        """A configured access token is used without calling the token endpoint."""
        auth = AuthConfig(type=AuthType.OAUTH2, token="access-1", token_endpoint=TOKEN_URL, client_id="cid")
        with respx.mock(base_url=BASE, assert_all_called=False) as router:
            token_route = router.post("/oauth/token")
            route = router.get("/me").mock(return_value=httpx.Response(200, json={"id": 1}))
            async with HttpClient(BASE, auth=auth, sleep=sleeper) as client:
                await client.request(HttpRequest("GET", "/me"))

        assert route.calls.last.request.headers["authorization"] == "Bearer access-1"
        assert token_route.call_count == 0

    @pytest.mark.asyncio
    async def test_refresh_after_unauthorized(self, sleeper):
        """A 401 refreshes the token once and replays the request."""
        auth = AuthConfig(
            type=AuthType.OAUTH2,
            token="stale",
            refresh_token="refresh-1",
            token_endpoint=TOKEN_URL,
            client_id="cid",
            client_secret="secret",
        )

        def me(request):
            if request.headers["authorization"] == "Bearer fresh":
                return httpx.Response(200, json={"id": 1})
            return httpx.Response(401)

        with respx.mock(base_url=BASE) as router:
            token_route = router.post("/oauth/token").mock(return_value=httpx.Response(
                200, json={"access_token": "fresh", "refresh_token": "refresh-2", "expires_in": 3600},
            ))
            route = router.get("/me").mock(side_effect=me)
            async with HttpClient(BASE, auth=auth, sleep=sleeper) as client:
                first = await client.request(HttpRequest("GET", "/me"))
                await client.request(HttpRequest("GET", "/me"))

        assert first.data == {"id": 1}
        assert token_route.call_count == 1
        assert form(token_route.calls.last.request) == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "cid",
            "client_secret": "secret",
        }
        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_client_credentials_fetch_once(self, sleeper):
        """Without a token, concurrent requests share one client_credentials grant."""
        auth = AuthConfig(type=AuthType.OAUTH2, token_endpoint=TOKEN_URL, client_id="cid", scope="read")
        with respx.mock(base_url=BASE) as router:
            token_route = router.post("/oauth/token").mock(
                return_value=httpx.Response(200, json={"access_token": "cc-token"})
            )
            route = router.get("/items").mock(return_value=httpx.Response(200, json=[]))
            async with HttpClient(BASE, auth=auth, sleep=sleeper) as client:
                await asyncio.gather(
                    client.request(HttpRequest("GET", "/items")),
                    client.request(HttpRequest("GET", "/items")),
                )

        assert token_route.call_count == 1
        assert form(token_route.calls.last.request) == {
            "grant_type": "client_credentials",
            "client_id": "cid",
            "scope": "read",
        }
        assert {c.request.headers["authorization"] for c in route.calls} == {"Bearer cc-token"}

    @pytest.mark.asyncio
    async def test_refresh_failure(self, sleeper):
        """A rejected refresh surfaces as an HttpError."""
        auth = AuthConfig(type=AuthType.OAUTH2, token_endpoint=TOKEN_URL, client_id="cid")
        with respx.mock(base_url=BASE, assert_all_called=False) as router:
            router.post("/oauth/token").mock(return_value=httpx.Response(400, text="invalid_client"))
            route = router.get("/items")
            async with HttpClient(BASE, auth=auth, sleep=sleeper) as client:
                with pytest.raises(HttpError, match="Token refresh failed: 400 invalid_client"):
                    await client.request(HttpRequest("GET", "/items"))

        assert route.call_count == 0

    def test_expiry_triggers_refresh(self, clock):
        """Tokens are refreshed within refresh_buffer of expiry."""
        auth = OAuth2Auth(
            AuthConfig(type=AuthType.OAUTH2, token="a", token_endpoint=TOKEN_URL, client_id="cid", refresh_buffer=60),
            clock=clock,
        )
        assert auth.needs_refresh() is False

        auth.update_tokens(httpx.Response(200, json={"access_token": "b", "expires_in": 600}))
        clock.advance(539)
        assert auth.needs_refresh() is False
        clock.advance(2)
        assert auth.needs_refresh() is True

    def test_needs_token_or_endpoint(self):
        """OAuth2 auth without a token or token endpoint is a configuration error."""
        with pytest.raises(ConfigError):
            OAuth2Auth(AuthConfig(type=AuthType.OAUTH2))
