"""Client for the association's WordPress member directory (ACF custom fields).

Every outcome is folded into a DirectoryLookup; httpx errors never leave this module.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.models import Association
from app.services.phone_service import InvalidPhoneError, normalize_phone

logger = get_logger("directory_service")

CUSTOM_FIELDS_KEY = "acf"
PHONE_FIELD = "telefone"


class DirectoryStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    UNAUTHORIZED = "unauthorized"


@dataclass
class DirectoryRecord:
    external_id: Optional[str]
    name: Optional[str] = None
    email: Optional[str] = None
    custom_fields: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class DirectoryLookup:
    status: DirectoryStatus
    record: Optional[DirectoryRecord] = None
    error: Optional[str] = None
    matched_variant: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == DirectoryStatus.FOUND


def parse_directory_record(item: dict[str, Any]) -> DirectoryRecord:
    custom_fields = item.get(CUSTOM_FIELDS_KEY)
    if not isinstance(custom_fields, dict):
        if custom_fields not in (None, "", [], False):
            logger.warning(
                "Directory custom fields are not an object, ignoring",
                extra={"context": {"external_id": item.get("id"), "type": type(custom_fields).__name__}},
            )
        custom_fields = {}

    external_id = item.get("id")
    return DirectoryRecord(
        external_id=str(external_id) if external_id is not None else None,
        name=item.get("name") or item.get("display_name"),
        email=item.get("email"),
        custom_fields=dict(custom_fields),
        raw=item,
    )


def _candidates_from_payload(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        # Some endpoints wrap results: {"data": [...]} / {"clientes": [...]}
        for key in ("data", "clientes", "results"):
            if isinstance(payload.get(key), list):
                return [item for item in payload[key] if isinstance(item, dict)]
        if payload.get("id") is not None or isinstance(payload.get(CUSTOM_FIELDS_KEY), dict):
            return [payload]
    return []


def _matches_phone(record: DirectoryRecord, canonical: str) -> bool:
    stored = record.custom_fields.get(PHONE_FIELD)
    if not stored:
        return True
    try:
        return normalize_phone(str(stored)) == canonical
    except InvalidPhoneError:
        return True


class WordPressDirectoryClient:
    """Phone lookups against `{wordpress_url}{search_path}?{phone_filter}=<variant>`."""

    def __init__(
        self,
        timeout: float = 5.0,
        search_path: str = "/wp-json/sativar/v1/clientes",
        phone_filter: str = "acf_filters[telefone]",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.search_path = search_path
        self.phone_filter = phone_filter
        self._transport = transport

    def _client(self, association: Association) -> httpx.AsyncClient:
        auth_config = association.wordpress_auth or {}
        auth = None
        if auth_config.get("username") and auth_config.get("password"):
            auth = httpx.BasicAuth(auth_config["username"], auth_config["password"])
        headers = {"Accept": "application/json"}
        if auth_config.get("api_key"):
            headers["X-API-Key"] = auth_config["api_key"]
        return httpx.AsyncClient(
            base_url=association.wordpress_url.rstrip("/"),
            auth=auth,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _query(self, client: httpx.AsyncClient, variant: str) -> DirectoryLookup:
        try:
            response = await client.get(self.search_path, params={self.phone_filter: variant})
        except httpx.TimeoutException as e:
            return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error=f"timeout: {e}")
        except httpx.HTTPError as e:
            return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error=f"transport: {e}")

        if response.status_code in (401, 403):
            return DirectoryLookup(DirectoryStatus.UNAUTHORIZED, error=f"HTTP {response.status_code}")
        if response.status_code == 404:
            return DirectoryLookup(DirectoryStatus.NOT_FOUND)
        if response.status_code >= 400:
            return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error=f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error="invalid JSON")

        candidates = _candidates_from_payload(payload)
        if not candidates:
            return DirectoryLookup(DirectoryStatus.NOT_FOUND)

        records = [parse_directory_record(item) for item in candidates]
        canonical = normalize_phone(variant)
        matching = [record for record in records if _matches_phone(record, canonical)]
        if len(matching) < len(records):
            logger.warning(
                "Directory returned records for other phones",
                extra={"context": {"variant": variant, "returned": len(records), "kept": len(matching)}},
            )
        if not matching:
            return DirectoryLookup(DirectoryStatus.NOT_FOUND)
        if len(matching) > 1:
            # TODO: validate across all variants before accepting a match once
            # associations clean up duplicated members; first match wins for now.
            logger.warning(
                "Directory lookup ambiguous, taking first candidate",
                extra={
                    "context": {
                        "variant": variant,
                        "candidates": [record.external_id for record in matching],
                    }
                },
            )
        return DirectoryLookup(DirectoryStatus.FOUND, record=matching[0], matched_variant=variant)

    async def find_by_phone(self, association: Association, variants: Iterable[str]) -> DirectoryLookup:
        """Query each variant in order and return the first match."""
        if not association.wordpress_url:
            logger.info(
                "Association has no directory configured",
                extra={"context": {"association": association.subdomain}},
            )
            return DirectoryLookup(DirectoryStatus.NOT_FOUND)

        async with self._client(association) as client:
            for variant in variants:
                lookup = await self._query(client, variant)
                if lookup.status == DirectoryStatus.NOT_FOUND:
                    continue
                if lookup.status == DirectoryStatus.UNAUTHORIZED:
                    logger.error(
                        "Directory rejected credentials",
                        extra={"context": {"association": association.subdomain, "error": lookup.error}},
                    )
                elif lookup.status == DirectoryStatus.UNAVAILABLE:
                    logger.warning(
                        "Directory unavailable",
                        extra={"context": {"association": association.subdomain, "error": lookup.error}},
                    )
                return lookup

        return DirectoryLookup(DirectoryStatus.NOT_FOUND)

    async def test_connection(self, association: Association) -> DirectoryLookup:
        """Probe the directory with a one-item listing, for admin diagnostics."""
        if not association.wordpress_url:
            return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error="wordpress_url not configured")
        async with self._client(association) as client:
            try:
                response = await client.get(self.search_path, params={"per_page": 1})
            except httpx.HTTPError as e:
                return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error=str(e))
        if response.status_code in (401, 403):
            return DirectoryLookup(DirectoryStatus.UNAUTHORIZED, error=f"HTTP {response.status_code}")
        if response.status_code >= 400:
            return DirectoryLookup(DirectoryStatus.UNAVAILABLE, error=f"HTTP {response.status_code}")
        return DirectoryLookup(DirectoryStatus.FOUND)


def get_directory_client() -> WordPressDirectoryClient:
    return WordPressDirectoryClient(
        timeout=settings.directory_timeout_seconds,
        search_path=settings.directory_search_path,
        phone_filter=settings.directory_phone_filter,
    )
