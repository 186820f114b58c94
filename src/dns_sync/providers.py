"""DNS provider contract and the AdGuard Home and Cloudflare implementations.

Providers translate ``requests`` failures and HTTP status codes into the
``ProviderError`` taxonomy so the reconciliation engine never looks at HTTP
details or branches on which provider it is talking to.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.auth import HTTPBasicAuth

from dns_sync.config import Settings
from dns_sync.errors import (
    ConfigError,
    ProviderAuth,
    ProviderConflict,
    ProviderError,
    ProviderNotFound,
    ProviderTransient,
    ProviderValidation,
    RateLimited,
)
from dns_sync.models import DesiredRecord, ProviderRecord, normalize_name, record_key

logger = logging.getLogger(__name__)

# =============================================================================
# DNS Provider Interface
# =============================================================================


@dataclass(frozen=True)
class RecordFilter:
    """Optional narrowing for ``list_records``."""

    type: Optional[str] = None
    name: Optional[str] = None

    def matches(self, record: ProviderRecord) -> bool:
        if self.type and record.type.upper() != self.type.upper():
            return False
        if self.name and normalize_name(record.name) != normalize_name(self.name):
            return False
        return True


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable provider key, used in the database and logs."""
        pass

    @property
    def display_name(self) -> str:
        return self.name

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def list_records(self, filter: Optional[RecordFilter] = None) -> List[ProviderRecord]:
        """Return every record the provider reports, optionally filtered."""
        pass

    @abstractmethod
    def create_record(self, record: DesiredRecord) -> ProviderRecord:
        """Create a record. Raises ProviderConflict if it already exists."""
        pass

    @abstractmethod
    def update_record(self, record_id: str, record: DesiredRecord) -> ProviderRecord:
        """Update a record in place. The returned id may differ from ``record_id``."""
        pass

    @abstractmethod
    def delete_record(self, record_id: str) -> bool:
        """Delete a record. Returns False when it was already gone."""
        pass

    @property
    def supports_batch(self) -> bool:
        return False

    def batch_ensure_records(self, records: Sequence[DesiredRecord]) -> List[ProviderRecord]:
        """Create or update ``records`` in one request; results follow input order."""
        raise NotImplementedError(f"{self.name} does not support batch operations")


def _response_detail(response: requests.Response) -> str:
    try:
        return json.dumps(response.json())[:300]
    except ValueError:
        return (response.text or "")[:300]


def raise_for_status(response: requests.Response, provider: str, action: str) -> None:
    """Map an HTTP error response onto the provider error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    message = f"{action} failed with HTTP {status}: {_response_detail(response)}"
    if status in (401, 403):
        raise ProviderAuth(message, provider)
    if status == 404:
        raise ProviderNotFound(message, provider)
    if status == 409:
        raise ProviderConflict(message, provider)
    if status == 429:
        raise RateLimited(message, provider)
    if status >= 500:
        raise ProviderTransient(message, provider)
    raise ProviderValidation(message, provider)


def _request_error(exc: requests.exceptions.RequestException, provider: str, action: str) -> ProviderError:
    return ProviderTransient(f"{action} failed: {exc}", provider)


# =============================================================================
# AdGuard Home
# =============================================================================


class AdGuardDNSProvider(DNSProvider):
    """AdGuard Home DNS rewrites.

    Rewrites carry only a domain and an answer, so the record id is
    ``domain|answer`` and the type is inferred from the answer. TTL and the
    proxied flag are not stored by AdGuard; created and updated records echo
    them from the request, listed records report ``default_ttl``.
    """

    SUPPORTED_TYPES = ("A", "AAAA", "CNAME")

    def __init__(self, url: str, username: str, password: str, *, default_ttl: int = 300):
        self._url = url.rstrip("/")
        self._auth = HTTPBasicAuth(username, password) if username and password else None
        self._session = requests.Session()
        if self._auth:
            self._session.auth = self._auth
        self.default_ttl = default_ttl

    @property
    def name(self) -> str:
        return "adguard"

    @property
    def display_name(self) -> str:
        return "AdGuard Home"

    @staticmethod
    def record_id(domain: str, answer: str) -> str:
        return f"{normalize_name(domain)}|{answer}"

    @staticmethod
    def split_record_id(record_id: str) -> tuple:
        domain, sep, answer = record_id.partition("|")
        if not sep or not domain or not answer:
            raise ProviderValidation(f"Malformed AdGuard record id '{record_id}'", "adguard")
        return domain, answer

    @staticmethod
    def infer_type(answer: str) -> str:
        try:
            address = ipaddress.ip_address(answer)
        except ValueError:
            return "CNAME"
        return "A" if address.version == 4 else "AAAA"

    def _validate(self, record: DesiredRecord) -> None:
        record_type = record.type.upper()
        if record_type not in self.SUPPORTED_TYPES:
            raise ProviderValidation(
                f"AdGuard rewrites support {', '.join(self.SUPPORTED_TYPES)}, not {record_type}",
                self.name,
            )
        if self.infer_type(record.content) != record_type:
            raise ProviderValidation(
                f"Answer '{record.content}' is not a valid {record_type} value for {record.name}",
                self.name,
            )

    def _rewrite(self, domain: str, answer: str, ttl: Optional[int] = None, proxied: bool = False) -> ProviderRecord:
        return ProviderRecord(
            id=self.record_id(domain, answer),
            type=self.infer_type(answer),
            name=normalize_name(domain),
            content=answer,
            ttl=self.default_ttl if ttl is None else ttl,
            proxied=proxied,
        )

    def _post(self, path: str, payload: Dict[str, Any], action: str) -> None:
        try:
            response = self._session.post(f"{self._url}{path}", json=payload, timeout=5)
        except requests.exceptions.RequestException as e:
            raise _request_error(e, self.name, action)
        raise_for_status(response, self.name, action)

    def test_connection(self) -> bool:
        try:
            response = self._session.get(f"{self._url}/control/status", timeout=5)
            response.raise_for_status()
            logger.info(f"{self.display_name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.display_name}: {e}")
            return False

    def list_records(self, filter: Optional[RecordFilter] = None) -> List[ProviderRecord]:
        action = "List rewrites"
        try:
            response = self._session.get(f"{self._url}/control/rewrite/list", timeout=5)
        except requests.exceptions.RequestException as e:
            raise _request_error(e, self.name, action)
        raise_for_status(response, self.name, action)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{action} returned invalid JSON: {e}", self.name)

        records = []
        for r in data or []:
            domain = r.get("domain") if isinstance(r, dict) else None
            answer = r.get("answer") if isinstance(r, dict) else None
            if not isinstance(domain, str) or not isinstance(answer, str):
                logger.warning(f"Skipping malformed rewrite: {r}")
                continue
            record = self._rewrite(domain, answer)
            if filter is None or filter.matches(record):
                records.append(record)
        return records

    def _exists(self, record_id: str) -> bool:
        return any(r.id == record_id for r in self.list_records())

    def create_record(self, record: DesiredRecord) -> ProviderRecord:
        self._validate(record)
        domain = normalize_name(record.name)
        if self._exists(self.record_id(domain, record.content)):
            raise ProviderConflict(f"Rewrite {domain} -> {record.content} already exists", self.name)

        self._post(
            "/control/rewrite/add",
            {"domain": domain, "answer": record.content},
            f"Add rewrite {domain}",
        )
        logger.info(f"Added DNS rewrite: {domain} -> {record.content}")
        return self._rewrite(domain, record.content, record.ttl, record.proxied)

    def update_record(self, record_id: str, record: DesiredRecord) -> ProviderRecord:
        self._validate(record)
        old_domain, old_answer = self.split_record_id(record_id)
        domain = normalize_name(record.name)
        if (old_domain, old_answer) != (domain, record.content):
            if not self._exists(record_id):
                raise ProviderNotFound(f"Rewrite {old_domain} -> {old_answer} not found", self.name)
            try:
                response = self._session.put(
                    f"{self._url}/control/rewrite/update",
                    json={
                        "target": {"domain": old_domain, "answer": old_answer},
                        "update": {"domain": domain, "answer": record.content},
                    },
                    timeout=5,
                )
            except requests.exceptions.RequestException as e:
                raise _request_error(e, self.name, f"Update rewrite {domain}")
            raise_for_status(response, self.name, f"Update rewrite {domain}")
            logger.info(f"Updated DNS rewrite: {domain} {old_answer} -> {record.content}")
        return self._rewrite(domain, record.content, record.ttl, record.proxied)

    def delete_record(self, record_id: str) -> bool:
        domain, answer = self.split_record_id(record_id)
        if not self._exists(record_id):
            logger.debug(f"Rewrite {domain} -> {answer} already absent")
            return False
        self._post(
            "/control/rewrite/delete",
            {"domain": domain, "answer": answer},
            f"Delete rewrite {domain}",
        )
        logger.info(f"Deleted DNS rewrite: {domain} -> {answer}")
        return True


# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 DNS records API for a single zone."""

    API_URL = "https://api.cloudflare.com/client/v4"
    PAGE_SIZE = 100
    # "record already exists" / "identical record already exists" / "host already in use"
    CONFLICT_CODES = {81053, 81057, 81058}
    COMMENT = "Managed by dns-sync"
    # Proxied records always report this TTL ("Auto"), whatever was requested.
    AUTO_TTL = 1

    def __init__(self, token: str, zone_id: str, *, api_url: str = API_URL):
        self._url = api_url.rstrip("/")
        self.zone_id = zone_id
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "cloudflare"

    @property
    def display_name(self) -> str:
        return "Cloudflare"

    @property
    def supports_batch(self) -> bool:
        return True

    @property
    def _records_url(self) -> str:
        return f"{self._url}/zones/{self.zone_id}/dns_records"

    def _request(self, method: str, url: str, action: str, **kwargs: Any) -> Any:
        try:
            response = self._session.request(method, url, timeout=10, **kwargs)
        except requests.exceptions.RequestException as e:
            raise _request_error(e, self.name, action)

        if response.status_code >= 400:
            codes = self._error_codes(response)
            if codes & self.CONFLICT_CODES:
                raise ProviderConflict(f"{action}: record already exists", self.name)
            raise_for_status(response, self.name, action)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(f"{action} returned invalid JSON: {e}", self.name)
        if not body.get("success", True):
            raise ProviderError(f"{action} was rejected: {body.get('errors')}", self.name)
        return body

    @staticmethod
    def _error_codes(response: requests.Response) -> set:
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            return set()
        return {e.get("code") for e in errors if isinstance(e, dict)}

    @staticmethod
    def _to_record(data: Dict[str, Any]) -> ProviderRecord:
        return ProviderRecord(
            id=str(data["id"]),
            type=str(data.get("type", "")).upper(),
            name=normalize_name(str(data.get("name", ""))),
            content=str(data.get("content", "")),
            ttl=int(data.get("ttl") or 1),
            proxied=bool(data.get("proxied", False)),
        )

    @classmethod
    def _as_requested(cls, result: ProviderRecord, requested: DesiredRecord) -> ProviderRecord:
        """Echo the requested TTL for proxied records, which only report the automatic one."""
        if result.proxied and result.ttl == cls.AUTO_TTL:
            return replace(result, ttl=requested.ttl)
        return result

    def _payload(self, record: DesiredRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": record.type.upper(),
            "name": normalize_name(record.name),
            "content": record.content,
            "ttl": record.ttl,
            "comment": self.COMMENT,
        }
        if record.type.upper() in ("A", "AAAA", "CNAME"):
            payload["proxied"] = record.proxied
        return payload

    def test_connection(self) -> bool:
        try:
            self._request("GET", f"{self._url}/zones/{self.zone_id}", "Zone lookup")
            logger.info(f"{self.display_name} connection successful")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.display_name}: {e}")
            return False

    def list_records(self, filter: Optional[RecordFilter] = None) -> List[ProviderRecord]:
        params: Dict[str, Any] = {"per_page": self.PAGE_SIZE}
        if filter and filter.type:
            params["type"] = filter.type.upper()
        if filter and filter.name:
            params["name"] = normalize_name(filter.name)

        records: List[ProviderRecord] = []
        page = 1
        while True:
            body = self._request(
                "GET", self._records_url, "List records", params={**params, "page": page}
            )
            for data in body.get("result") or []:
                record = self._to_record(data)
                if filter is None or filter.matches(record):
                    records.append(record)
            info = body.get("result_info") or {}
            if page >= int(info.get("total_pages") or 1):
                break
            page += 1
        return records

    def create_record(self, record: DesiredRecord) -> ProviderRecord:
        body = self._request(
            "POST", self._records_url, f"Create {record.type} {record.name}", json=self._payload(record)
        )
        created = self._as_requested(self._to_record(body["result"]), record)
        logger.info(f"Created {created.type} record for {created.name}")
        return created

    def update_record(self, record_id: str, record: DesiredRecord) -> ProviderRecord:
        body = self._request(
            "PUT",
            f"{self._records_url}/{record_id}",
            f"Update {record.type} {record.name}",
            json=self._payload(record),
        )
        updated = self._as_requested(self._to_record(body["result"]), record)
        logger.info(f"Updated {updated.type} record for {updated.name}")
        return updated

    def delete_record(self, record_id: str) -> bool:
        try:
            self._request("DELETE", f"{self._records_url}/{record_id}", f"Delete record {record_id}")
        except ProviderNotFound:
            logger.debug(f"Cloudflare record {record_id} already absent")
            return False
        logger.info(f"Deleted Cloudflare record {record_id}")
        return True

    def batch_ensure_records(self, records: Sequence[DesiredRecord]) -> List[ProviderRecord]:
        """Create missing records and patch existing ones in a single batch request.

        Cloudflare applies the batch atomically: either every change lands or
        the request fails and nothing changed.
        """
        if not records:
            return []

        existing = {r.key: r for r in self.list_records()}
        posts: List[Dict[str, Any]] = []
        patches: List[Dict[str, Any]] = []
        plan: List[tuple] = []
        for record in records:
            current = existing.get(record.key)
            if current is None:
                plan.append(("posts", len(posts), record))
                posts.append(self._payload(record))
            elif self._as_requested(current, record).fingerprint == record.fingerprint:
                plan.append(("unchanged", current, record))
            else:
                plan.append(("patches", len(patches), record))
                patches.append({"id": current.id, **self._payload(record)})

        results: Dict[str, List[ProviderRecord]] = {"posts": [], "patches": []}
        if posts or patches:
            body = self._request(
                "POST",
                f"{self._records_url}/batch",
                f"Batch of {len(posts)} creates and {len(patches)} updates",
                json={"posts": posts, "patches": patches},
            )
            result = body.get("result") or {}
            results["posts"] = [self._to_record(d) for d in result.get("posts") or []]
            results["patches"] = [self._to_record(d) for d in result.get("patches") or []]
            if len(results["posts"]) != len(posts) or len(results["patches"]) != len(patches):
                raise ProviderError("Batch response does not match the request", self.name)
            logger.info(f"Cloudflare batch applied: {len(posts)} created, {len(patches)} updated")

        ensured: List[ProviderRecord] = []
        for kind, value, record in plan:
            result = value if kind == "unchanged" else results[kind][value]
            ensured.append(self._as_requested(result, record))
        return ensured


# =============================================================================
# Factory
# =============================================================================


def create_dns_providers(settings: Settings) -> Dict[str, DNSProvider]:
    """Build the configured DNS providers, keyed by provider name."""
    providers: Dict[str, DNSProvider] = {}
    for name in settings.providers:
        if name == "adguard":
            providers[name] = AdGuardDNSProvider(
                settings.adguard_url,
                settings.adguard_username,
                settings.adguard_password,
                default_ttl=settings.default_ttl,
            )
        elif name == "cloudflare":
            providers[name] = CloudflareDNSProvider(
                settings.cloudflare_token, settings.cloudflare_zone_id
            )
        else:
            raise ConfigError(f"Unsupported DNS provider: '{name}'. Supported providers: adguard, cloudflare")
    return providers


def find_provider_record(provider: DNSProvider, record: DesiredRecord) -> Optional[ProviderRecord]:
    """Look up the provider's current record for ``record``'s type and name."""
    key = record_key(record.type, record.name)
    for candidate in provider.list_records(RecordFilter(type=record.type, name=record.name)):
        if candidate.key == key:
            return candidate
    return None
