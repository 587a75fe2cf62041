"""
Async client for the remote organization registry.

The registry is a membership-management system exposing organizations,
groups (teams), contacts (players) and seasons. All calls are bearer-token
authenticated; the token comes from a form-encoded username/password POST and
is refreshed lazily before each call once it is within five minutes of expiry.

Responses are not consistently shaped: point lookups return arrays, and
membership rows name their season under several different keys. Everything
leaving this module has been normalized through the helpers below.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Protocol

import httpx

from rostersync.core.config import get_settings
from rostersync.core.errors import (
    AccessDeniedError,
    AuthenticationError,
    ErrorKind,
    NetworkError,
    NotFoundError,
    RateLimitError,
    RemoteRequestError,
    ValidationError,
)

logger = logging.getLogger(__name__)

AUTHENTICATE_PATH = "/v2/api/authenticate"
ORGANIZATIONS_PATH = "/v2/api/organizations"
GROUPS_PATH = "/v2/api/groups"
GROUP_CONTACTS_PATH = "/v2/api/group-contacts"
CONTACTS_PATH = "/v2/api/contacts"
SEASONS_PATH = "/v2/api/seasons"

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME_SECONDS = 86400

# The registry rejects longer contact-ids[] query strings
CONTACT_BATCH_SIZE = 10

MAX_RETRIES = 3

# Keys under which membership rows report their season, in lookup order
SEASON_ID_FIELDS = ("seasonId", "season_id", "season-id")

# Keys under which membership rows reference the contact, in lookup order
CONTACT_ID_FIELDS = ("contactId", "contact_id", "contact-id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenSession:
    """An access token and the moment it stops being valid."""

    token: str
    expires_at: datetime

    def expires_within(self, buffer: timedelta, now: datetime) -> bool:
        return self.expires_at - now <= buffer


# ─── Response normalization ──────────────────────────────────────────────────

def as_records(payload: Any) -> list[dict]:
    """Normalize a list response; anything that is not a list becomes empty."""
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def first_field(record: dict, variants: Iterable[str]) -> Any:
    """Return the value of the first variant key present with a non-null value."""
    for key in variants:
        value = record.get(key)
        if value is not None:
            return value
    return None


def membership_season_id(row: dict) -> Optional[str]:
    value = first_field(row, SEASON_ID_FIELDS)
    return None if value is None else str(value)


def membership_contact_id(row: dict) -> Optional[str]:
    value = first_field(row, CONTACT_ID_FIELDS)
    if value is None and isinstance(row.get("contact"), dict):
        value = row["contact"].get("id")
    return None if value is None else str(value)


def filter_rows_by_season(rows: list[dict], season_id: Any) -> list[dict]:
    """
    Keep only membership rows belonging to the given season.

    When no row carries a season identifier under any known key the rows
    cannot be told apart, and all of them are kept.
    """
    wanted = str(season_id)
    if not any(membership_season_id(row) is not None for row in rows):
        logger.warning("Membership rows carry no season identifier; season filter not applied")
        return rows
    return [row for row in rows if membership_season_id(row) == wanted]


def unique_contact_ids(rows: list[dict]) -> list[str]:
    """Contact ids referenced by membership rows, de-duplicated in first-seen order."""
    seen: dict[str, None] = {}
    for row in rows:
        contact_id = membership_contact_id(row)
        if contact_id is not None and contact_id not in seen:
            seen[contact_id] = None
    return list(seen)


def _clean_params(params: Optional[dict]) -> dict:
    return {k: v for k, v in (params or {}).items() if v is not None}


def _organization_filter(params: dict) -> list:
    value = params.get("organization-ids[]")
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


# ─── Client ──────────────────────────────────────────────────────────────────

class RegistryAPI(Protocol):
    """Operations the sync engine needs from the registry."""

    async def authenticate(self) -> TokenSession: ...

    async def verify_connection(self) -> bool: ...

    async def get_organizations(self) -> list[dict]: ...

    async def get_groups(self, filters: Optional[dict] = None) -> dict[str, Any]: ...

    async def get_group(self, group_id: Any) -> dict: ...

    async def get_group_contacts(
        self,
        group_id: Any,
        season_id: Any = None,
        organization_ids: Optional[list] = None,
    ) -> dict[str, Any]: ...

    async def get_contacts(self, filters: Optional[dict] = None) -> dict[str, Any]: ...

    async def get_seasons(self, filters: Optional[dict] = None) -> dict[str, Any]: ...

    async def close(self) -> None: ...


class RegistryClient:
    """Async client for the registry API."""

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str = "https://app.twizzit.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
        retry_delay: float = 1.0,
    ):
        missing = [
            {"field": name, "message": f"{name} is required"}
            for name, value in (("username", username), ("password", password))
            if not value
        ]
        if missing:
            raise ValidationError("Registry username and password are required", errors=missing)

        self.base_url = base_url.rstrip("/")
        self.username = username
        self._password = password
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._transport = transport
        self._clock = clock
        self.session: Optional[TokenSession] = None
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Authentication ───────────────────────────────────────────────────────

    async def authenticate(self) -> TokenSession:
        """
        Exchange username/password for an access token.

        The session is replaced wholesale; a failed attempt leaves no token
        behind.

        Raises:
            AuthenticationError: credentials rejected, token missing from the
                response, or the request could not be sent.
            RateLimitError: the registry's call quota is exhausted.
        """
        self.session = None
        client = await self._get_client()
        try:
            response = await client.post(
                AUTHENTICATE_PATH,
                data={"username": self.username, "password": self._password},
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Authentication failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError("Invalid registry credentials")
        if response.status_code == 429:
            raise RateLimitError("Registry API call limit exceeded")
        if response.is_error:
            raise AuthenticationError(f"Authentication failed: HTTP {response.status_code}")

        payload = self._parse_json(response, "authentication")
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise AuthenticationError("Authentication failed: response missing token")

        try:
            expires_in = float(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        self.session = TokenSession(token=token, expires_at=self._clock() + timedelta(seconds=expires_in))
        logger.info(f"Authenticated with registry as {self.username}, token valid until {self.session.expires_at.isoformat()}")
        return self.session

    async def ensure_authenticated(self) -> TokenSession:
        """Return a usable session, authenticating first if none is held or it expires within the buffer."""
        if self.session is None or self.session.expires_within(TOKEN_REFRESH_BUFFER, self._clock()):
            if self.session is not None:
                logger.info("Registry token expires within 5 minutes, refreshing")
            await self.authenticate()
        return self.session

    # ── Transport ────────────────────────────────────────────────────────────

    def _parse_json(self, response: httpx.Response, context: str) -> Any:
        """Parse JSON response, returning None on an empty or malformed body."""
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"{context}: Failed to parse JSON: {e}, body: {response.text[:200]}")
            return None

    async def _get(
        self,
        path: str,
        params: Optional[dict],
        resource: str,
        not_found_id: Any = None,
    ) -> Any:
        """
        Authenticated GET with one re-authentication on 401 and backoff on 5xx.

        Raises:
            NetworkError: the request could not be sent.
            AuthenticationError: still unauthorized after re-authenticating.
            AccessDeniedError: HTTP 403.
            NotFoundError: HTTP 404 when `not_found_id` is given.
            RateLimitError: HTTP 429.
            RemoteRequestError: any other error status.
        """
        params = _clean_params(params)
        client = await self._get_client()
        reauthenticated = False
        attempt = 0

        while True:
            session = await self.ensure_authenticated()
            try:
                response = await client.get(
                    path,
                    params=params,
                    headers={"Authorization": f"Bearer {session.token}"},
                )
            except httpx.TransportError as e:
                logger.error(f"Transport error fetching {resource}: {e}")
                raise NetworkError(f"Failed to fetch {resource}") from e

            status = response.status_code
            if status == 401:
                if reauthenticated:
                    raise AuthenticationError(f"Registry rejected credentials while fetching {resource}")
                logger.warning(f"Registry returned 401 for {resource}, re-authenticating")
                self.session = None
                reauthenticated = True
                continue

            if status >= 500 and attempt < MAX_RETRIES - 1:
                wait_time = self.retry_delay * (2 ** attempt)
                logger.warning(f"Registry server error {status} for {resource}, waiting {wait_time}s (attempt {attempt + 1}/{MAX_RETRIES})")
                attempt += 1
                await asyncio.sleep(wait_time)
                continue

            if response.is_error:
                self._raise_for_status(response, params, resource, not_found_id)

            return self._parse_json(response, resource)

    def _raise_for_status(self, response: httpx.Response, params: dict, resource: str, not_found_id: Any) -> None:
        kind = ErrorKind.from_status(response.status_code)
        if kind is ErrorKind.ACCESS_DENIED:
            raise AccessDeniedError(_organization_filter(params))
        if kind is ErrorKind.NOT_FOUND and not_found_id is not None:
            raise NotFoundError(not_found_id, resource=resource.capitalize())
        if kind is ErrorKind.RATE_LIMITED:
            raise RateLimitError("Registry API call limit exceeded")
        raise RemoteRequestError(
            f"Failed to fetch {resource}: HTTP {response.status_code}",
            response.status_code,
        )

    # ── Endpoints ────────────────────────────────────────────────────────────

    async def get_organizations(self) -> list[dict]:
        """Fetch organizations visible to the authenticated account."""
        return as_records(await self._get(ORGANIZATIONS_PATH, None, "organizations"))

    async def verify_connection(self) -> bool:
        """Authenticate and perform one lightweight read. Never raises for registry errors."""
        try:
            await self.ensure_authenticated()
            await self.get_organizations()
            return True
        except (AuthenticationError, AccessDeniedError, NetworkError, RateLimitError, RemoteRequestError) as e:
            logger.warning(f"Registry connection check failed: {e}")
            return False

    async def get_groups(self, filters: Optional[dict] = None) -> dict[str, Any]:
        """Fetch groups (teams), e.g. filtered by `organization-ids[]`."""
        groups = as_records(await self._get(GROUPS_PATH, filters, "groups"))
        return {"groups": groups, "total": len(groups)}

    async def get_group(self, group_id: Any) -> dict:
        """
        Fetch a single group.

        The registry answers point lookups with an array; the first element
        is returned.

        Raises:
            ValidationError: `group_id` is missing (no request is made).
            NotFoundError: the registry has no such group.
        """
        if group_id is None or group_id == "":
            raise ValidationError(
                "Group ID is required",
                errors=[{"field": "group_id", "message": "Group ID is required"}],
            )

        payload = await self._get(GROUPS_PATH, {"id": group_id}, "group", not_found_id=group_id)
        if isinstance(payload, dict) and payload.get("id") is not None:
            return payload
        groups = as_records(payload)
        if not groups:
            raise NotFoundError(group_id)
        return groups[0]

    async def get_group_contacts(
        self,
        group_id: Any,
        season_id: Any = None,
        organization_ids: Optional[list] = None,
    ) -> dict[str, Any]:
        """
        Resolve the contacts belonging to a group, optionally for one season.

        With a season, the registry is first asked for season-scoped
        membership rows. Some accounts reject that filter combination with
        HTTP 400; the client then fetches all membership rows for the group
        and filters them by season locally. Either way the referenced contact
        ids are resolved to full contact records in sequential batches of at
        most CONTACT_BATCH_SIZE.

        Returns:
            {"contacts": [...], "total": <number of distinct contact ids>}
        """
        if group_id is None or group_id == "":
            raise ValidationError(
                "Group ID is required",
                errors=[{"field": "group_id", "message": "Group ID is required"}],
            )

        base_params = {"group-ids[]": [group_id]}
        if organization_ids:
            base_params["organization-ids[]"] = list(organization_ids)

        rows: Optional[list[dict]] = None
        if season_id is not None:
            try:
                rows = as_records(await self._get(
                    GROUP_CONTACTS_PATH,
                    {**base_params, "season-id": season_id},
                    "group contacts",
                ))
            except RemoteRequestError as e:
                if e.status_code != 400:
                    raise
                logger.info(f"Registry rejected season filter for group {group_id}, filtering membership rows locally")

        if rows is None:
            rows = as_records(await self._get(GROUP_CONTACTS_PATH, base_params, "group contacts"))
            if season_id is not None:
                rows = filter_rows_by_season(rows, season_id)

        contact_ids = unique_contact_ids(rows)
        contacts = await self._get_contacts_by_ids(contact_ids, organization_ids)
        return {"contacts": contacts, "total": len(contact_ids)}

    async def _get_contacts_by_ids(self, contact_ids: list[str], organization_ids: Optional[list] = None) -> list[dict]:
        """Fetch contact details in sequential batches, preserving order."""
        contacts: list[dict] = []
        for start in range(0, len(contact_ids), CONTACT_BATCH_SIZE):
            batch = contact_ids[start:start + CONTACT_BATCH_SIZE]
            params: dict[str, Any] = {"contact-ids[]": batch}
            if organization_ids:
                params["organization-ids[]"] = list(organization_ids)
            contacts.extend(as_records(await self._get(CONTACTS_PATH, params, "contacts")))
        return contacts

    async def get_contacts(self, filters: Optional[dict] = None) -> dict[str, Any]:
        """Fetch contacts with arbitrary registry filters."""
        contacts = as_records(await self._get(CONTACTS_PATH, filters, "contacts"))
        return {"contacts": contacts, "total": len(contacts)}

    async def get_seasons(self, filters: Optional[dict] = None) -> dict[str, Any]:
        """Fetch seasons with arbitrary registry filters."""
        seasons = as_records(await self._get(SEASONS_PATH, filters, "seasons"))
        return {"seasons": seasons, "total": len(seasons)}


def create_registry_client(username: str, password: str) -> RegistryClient:
    """Build a client for the configured registry endpoint."""
    settings = get_settings()
    return RegistryClient(
        username,
        password,
        base_url=settings.registry_base_url,
        timeout=settings.registry_timeout,
    )
