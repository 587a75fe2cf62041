"""Tests for the registry HTTP client.

Requests are served by httpx.MockTransport handlers, so these tests exercise
the real request building, status classification and response normalization
without a network.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from rostersync.core.errors import (
    AccessDeniedError,
    AuthenticationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    RemoteRequestError,
    ValidationError,
)
from rostersync.services.registry import RegistryClient


class Clock:
    def __init__(self):
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _query(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.url.query.decode())


def _make_client(handler, clock=None, **kwargs) -> RegistryClient:
    return RegistryClient(
        "club-api",
        "s3cret",
        base_url="https://registry.test",
        transport=httpx.MockTransport(handler),
        clock=clock or Clock(),
        retry_delay=0,
        **kwargs,
    )


def _routes(routes: dict, log: list | None = None):
    """Build a handler from {path: callable(request) -> Response}, answering authentication by default."""
    def handler(request: httpx.Request) -> httpx.Response:
        if log is not None:
            log.append(request)
        path = request.url.path
        if path in routes:
            return routes[path](request)
        if path == "/v2/api/authenticate":
            return httpx.Response(200, json={"token": "tok-1", "expires_in": 3600})
        return httpx.Response(404)
    return handler


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_posts_form_encoded_credentials(self):
        seen = []
        client = _make_client(_routes({}, seen))
        session = await client.authenticate()
        await client.close()

        request = seen[0]
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert parse_qs(request.content.decode()) == {"username": ["club-api"], "password": ["s3cret"]}
        assert session.token == "tok-1"

    @pytest.mark.asyncio
    async def test_expiry_defaults_to_one_day(self):
        clock = Clock()
        client = _make_client(_routes({
            "/v2/api/authenticate": lambda r: httpx.Response(200, json={"token": "tok"}),
        }), clock=clock)
        session = await client.authenticate()
        assert session.expires_at == clock.now + timedelta(seconds=86400)

    @pytest.mark.asyncio
    async def test_missing_token_fails(self):
        client = _make_client(_routes({
            "/v2/api/authenticate": lambda r: httpx.Response(200, json={"expires_in": 60}),
        }))
        with pytest.raises(AuthenticationError):
            await client.authenticate()
        assert client.session is None

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        client = _make_client(_routes({
            "/v2/api/authenticate": lambda r: httpx.Response(401, json={"error": "nope"}),
        }))
        with pytest.raises(AuthenticationError, match="Invalid registry credentials"):
            await client.authenticate()

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        client = _make_client(_routes({
            "/v2/api/authenticate": lambda r: httpx.Response(429),
        }))
        with pytest.raises(RateLimitError):
            await client.authenticate()

    def test_missing_credentials_rejected_before_any_request(self):
        with pytest.raises(ValidationError) as exc_info:
            RegistryClient("", "")
        assert {e["field"] for e in exc_info.value.errors} == {"username", "password"}


class TestTokenRefresh:

    @pytest.mark.asyncio
    async def test_reuses_token_far_from_expiry(self):
        clock = Clock()
        seen = []
        client = _make_client(_routes({
            "/v2/api/organizations": lambda r: httpx.Response(200, json=[]),
        }, seen), clock=clock)

        await client.get_organizations()
        clock.now += timedelta(minutes=54)  # 6 minutes left on a 1 hour token
        await client.get_organizations()

        auth_calls = [r for r in seen if r.url.path == "/v2/api/authenticate"]
        assert len(auth_calls) == 1

    @pytest.mark.asyncio
    async def test_refreshes_within_five_minutes_of_expiry(self):
        clock = Clock()
        seen = []
        client = _make_client(_routes({
            "/v2/api/organizations": lambda r: httpx.Response(200, json=[]),
        }, seen), clock=clock)

        await client.get_organizations()
        clock.now += timedelta(minutes=56)  # 4 minutes left
        await client.get_organizations()

        auth_calls = [r for r in seen if r.url.path == "/v2/api/authenticate"]
        assert len(auth_calls) == 2

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen = []
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(200, json=[]),
        }, seen))
        await client.get_groups()
        assert seen[-1].headers["authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_401_triggers_one_reauthentication(self):
        responses = iter([httpx.Response(401), httpx.Response(200, json=[{"id": 1, "name": "U10"}])])
        seen = []
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: next(responses),
        }, seen))

        result = await client.get_groups()

        assert result == {"groups": [{"id": 1, "name": "U10"}], "total": 1}
        assert len([r for r in seen if r.url.path == "/v2/api/authenticate"]) == 2

    @pytest.mark.asyncio
    async def test_second_401_fails(self):
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(401),
        }))
        with pytest.raises(AuthenticationError):
            await client.get_groups()


class TestErrorClassification:

    @pytest.mark.asyncio
    async def test_403_reports_requested_organizations(self):
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(403),
        }))
        with pytest.raises(AccessDeniedError) as exc_info:
            await client.get_groups({"organization-ids[]": [42]})
        assert exc_info.value.organization_ids == [42]
        assert "42" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_404_on_group_lookup(self):
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(404),
        }))
        with pytest.raises(NotFoundError, match="Group not found: 7"):
            await client.get_group(7)

    @pytest.mark.asyncio
    async def test_empty_group_lookup_is_not_found(self):
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(200, json=[]),
        }))
        with pytest.raises(NotFoundError):
            await client.get_group(7)

    @pytest.mark.asyncio
    async def test_group_lookup_returns_first_element(self):
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(200, json=[{"id": 7, "name": "U12"}]),
        }))
        assert await client.get_group(7) == {"id": 7, "name": "U12"}

    @pytest.mark.asyncio
    async def test_missing_group_id_makes_no_request(self):
        seen = []
        client = _make_client(_routes({}, seen))
        with pytest.raises(ValidationError):
            await client.get_group(None)
        with pytest.raises(ValidationError):
            await client.get_group_contacts("")
        assert seen == []

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self):
        def handler(request):
            if request.url.path == "/v2/api/authenticate":
                return httpx.Response(200, json={"token": "tok"})
            raise httpx.ConnectError("connection refused", request=request)

        client = _make_client(handler)
        with pytest.raises(NetworkError):
            await client.get_seasons()

    @pytest.mark.asyncio
    async def test_429_is_rate_limit(self):
        client = _make_client(_routes({
            "/v2/api/contacts": lambda r: httpx.Response(429),
        }))
        with pytest.raises(RateLimitError):
            await client.get_contacts()

    @pytest.mark.asyncio
    async def test_5xx_retried_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(200, json=[{"id": 1}])])
        client = _make_client(_routes({
            "/v2/api/seasons": lambda r: next(responses),
        }))
        assert (await client.get_seasons())["total"] == 1

    @pytest.mark.asyncio
    async def test_5xx_gives_up_after_three_attempts(self):
        seen = []
        client = _make_client(_routes({
            "/v2/api/seasons": lambda r: httpx.Response(500),
        }, seen))
        with pytest.raises(RemoteRequestError) as exc_info:
            await client.get_seasons()
        assert exc_info.value.status_code == 500
        assert len([r for r in seen if r.url.path == "/v2/api/seasons"]) == 3

    @pytest.mark.asyncio
    async def test_non_array_responses_become_empty(self):
        client = _make_client(_routes({
            "/v2/api/groups": lambda r: httpx.Response(200, json={"unexpected": True}),
            "/v2/api/contacts": lambda r: httpx.Response(200, content=b""),
        }))
        assert await client.get_groups() == {"groups": [], "total": 0}
        assert await client.get_contacts() == {"contacts": [], "total": 0}


class TestGroupContacts:

    @pytest.mark.asyncio
    async def test_resolves_contacts_in_batches_of_ten(self):
        membership = [{"contactId": i} for i in range(1, 15)]
        contact_batches = []

        def contacts(request):
            ids = _query(request)["contact-ids[]"]
            contact_batches.append(ids)
            return httpx.Response(200, json=[{"id": int(i), "first-name": f"P{i}"} for i in ids])

        client = _make_client(_routes({
            "/v2/api/group-contacts": lambda r: httpx.Response(200, json=membership),
            "/v2/api/contacts": contacts,
        }))
        result = await client.get_group_contacts(5)

        assert [len(batch) for batch in contact_batches] == [10, 4]
        assert contact_batches[0] == [str(i) for i in range(1, 11)]
        assert [c["id"] for c in result["contacts"]] == list(range(1, 15))
        assert result["total"] == 14

    @pytest.mark.asyncio
    async def test_duplicate_memberships_resolved_once(self):
        membership = [{"contactId": 1}, {"contact_id": 1}, {"contact": {"id": 2}}]
        contact_batches = []

        def contacts(request):
            ids = _query(request)["contact-ids[]"]
            contact_batches.append(ids)
            return httpx.Response(200, json=[{"id": int(i)} for i in ids])

        client = _make_client(_routes({
            "/v2/api/group-contacts": lambda r: httpx.Response(200, json=membership),
            "/v2/api/contacts": contacts,
        }))
        result = await client.get_group_contacts(5)
        assert contact_batches == [["1", "2"]]
        assert result["total"] == 2

    @pytest.mark.asyncio
    async def test_season_filter_sent_to_registry(self):
        seen = []
        client = _make_client(_routes({
            "/v2/api/group-contacts": lambda r: httpx.Response(200, json=[{"contactId": 1}]),
            "/v2/api/contacts": lambda r: httpx.Response(200, json=[{"id": 1}]),
        }, seen))
        await client.get_group_contacts(5, season_id=2024)

        membership_request = next(r for r in seen if r.url.path == "/v2/api/group-contacts")
        query = _query(membership_request)
        assert query["group-ids[]"] == ["5"]
        assert query["season-id"] == ["2024"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("season_field", ["seasonId", "season_id", "season-id"])
    async def test_rejected_season_filter_falls_back_to_local_filtering(self, season_field):
        membership = [
            {"contactId": 1, season_field: 2024},
            {"contactId": 2, season_field: 2023},
            {"contactId": 3, season_field: "2024"},
        ]

        def group_contacts(request):
            if "season-id" in _query(request):
                return httpx.Response(400, json={"error": "unsupported filter"})
            return httpx.Response(200, json=membership)

        def contacts(request):
            ids = _query(request)["contact-ids[]"]
            return httpx.Response(200, json=[{"id": int(i)} for i in ids])

        client = _make_client(_routes({
            "/v2/api/group-contacts": group_contacts,
            "/v2/api/contacts": contacts,
        }))
        result = await client.get_group_contacts(5, season_id=2024)

        assert [c["id"] for c in result["contacts"]] == [1, 3]
        assert result["total"] == 2

    @pytest.mark.asyncio
    async def test_fallback_keeps_rows_without_season_field(self):
        def group_contacts(request):
            if "season-id" in _query(request):
                return httpx.Response(400)
            return httpx.Response(200, json=[{"contactId": 1}, {"contactId": 2}])

        client = _make_client(_routes({
            "/v2/api/group-contacts": group_contacts,
            "/v2/api/contacts": lambda r: httpx.Response(200, json=[{"id": 1}, {"id": 2}]),
        }))
        result = await client.get_group_contacts(5, season_id=2024)
        assert result["total"] == 2

    @pytest.mark.asyncio
    async def test_other_errors_do_not_fall_back(self):
        client = _make_client(_routes({
            "/v2/api/group-contacts": lambda r: httpx.Response(403),
        }))
        with pytest.raises(AccessDeniedError):
            await client.get_group_contacts(5, season_id=2024, organization_ids=[42])


class TestVerifyConnection:

    @pytest.mark.asyncio
    async def test_true_when_organizations_readable(self):
        client = _make_client(_routes({
            "/v2/api/organizations": lambda r: httpx.Response(200, json=[{"id": 42}]),
        }))
        assert await client.verify_connection() is True

    @pytest.mark.asyncio
    async def test_false_on_bad_credentials(self):
        client = _make_client(_routes({
            "/v2/api/authenticate": lambda r: httpx.Response(401),
        }))
        assert await client.verify_connection() is False
