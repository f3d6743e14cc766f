"""
Section fetchers.

A fetcher retrieves fresh data for one section of one domain and reports the
outcome in three shapes:

- a payload dict on success,
- a SectionFailure for permanent conditions (never retried),
- None for transient conditions (the decayed cadence retries later).

Simulated fetchers make no network requests; the HTTP headers and RDAP
registration fetchers use httpx.
"""

import abc
import hashlib
from http import HTTPStatus
from typing import Optional, Union

import httpx

from .audit_logger import AuditLogger, LoggingMixin
from .domain_validator import extract_tld
from .enums import ALL_SECTIONS, FailureReason, Section
from .models import SectionFailure


FetchOutcome = Union[dict, SectionFailure, None]

HEADERS_TIMEOUT_SECONDS = 5.0
MAX_REDIRECTS = 5

IMPORTANT_HEADERS = frozenset({
    "strict-transport-security",
    "content-security-policy",
    "content-type",
    "server",
    "x-powered-by",
    "x-frame-options",
    "x-content-type-options",
    "referrer-policy",
    "permissions-policy",
    "cache-control",
    "location",
})

DNS_ERROR_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "no address associated",
    "temporary failure in name resolution",
    "name does not resolve",
)

TLS_ERROR_MARKERS = ("ssl", "certificate", "tls")


class SectionFetcher(abc.ABC):
    """Fetches one section for a domain."""

    section: Section

    @abc.abstractmethod
    async def fetch(self, domain: str) -> FetchOutcome:
        """Return a payload, a permanent SectionFailure, or None (transient)."""

    async def close(self) -> None:
        return None


class SimulatedFetcher(SectionFetcher):
    """
    Deterministic fetcher used in simulation mode and tests.

    Domains listed in `failures` return that permanent failure; domains in
    `transient` return None; domains in `errors` raise RuntimeError.
    """

    def __init__(
        self,
        section: Section,
        failures: Optional[dict[str, FailureReason]] = None,
        transient: Optional[set[str]] = None,
        errors: Optional[set[str]] = None,
    ) -> None:
        self.section = section
        self.failures = dict(failures or {})
        self.transient = set(transient or ())
        self.errors = set(errors or ())
        self.calls: list[str] = []

    async def fetch(self, domain: str) -> FetchOutcome:
        self.calls.append(domain)
        if domain in self.errors:
            raise RuntimeError(f"simulated {self.section.value} fetch error for {domain}")
        if domain in self.transient:
            return None
        if domain in self.failures:
            return SectionFailure(
                domain=domain,
                section=self.section,
                reason=self.failures[domain],
                message="simulated failure",
            )
        digest = hashlib.sha256(f"{self.section.value}:{domain}".encode("utf-8")).hexdigest()
        return {
            "simulated": True,
            "domain": domain,
            "section": self.section.value,
            "fingerprint": digest[:16],
        }


def normalize_headers(headers: list[dict]) -> list[dict]:
    """Lowercase names; important headers first, then alphabetical."""
    normalized = [
        {"name": h["name"].strip().lower(), "value": h["value"]} for h in headers
    ]
    return sorted(
        normalized,
        key=lambda h: (h["name"] not in IMPORTANT_HEADERS, h["name"]),
    )


def _error_chain_text(error: BaseException) -> str:
    parts = []
    seen: set[int] = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        parts.append(f"{type(current).__name__}: {current}")
        current = current.__cause__ or current.__context__
    return " | ".join(parts).lower()


def is_expected_dns_error(error: BaseException) -> bool:
    text = _error_chain_text(error)
    return any(marker in text for marker in DNS_ERROR_MARKERS)


def is_expected_tls_error(error: BaseException) -> bool:
    text = _error_chain_text(error)
    return any(marker in text for marker in TLS_ERROR_MARKERS)


class HttpHeadersFetcher(SectionFetcher, LoggingMixin):
    """
    HTTP response headers of the domain's home page.

    HEAD first, falling back to GET when the server rejects HEAD. DNS and TLS
    failures are permanent; timeouts and other transport errors are transient.
    """

    section = Section.HEADERS
    _component = "headers_fetcher"

    def __init__(
        self,
        timeout: float = HEADERS_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._logger = logger

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
            )
        return self._client

    async def _request(self, domain: str) -> httpx.Response:
        client = self._get_client()
        url = f"https://{domain}/"
        response = await client.head(url)
        if response.status_code in (405, 501):
            response = await client.get(url)
        return response

    async def fetch(self, domain: str) -> FetchOutcome:
        try:
            response = await self._request(domain)
        except httpx.TimeoutException as e:
            self._log_warn("headers fetch timed out", {"domain": domain, "error": str(e)})
            return None
        except httpx.HTTPError as e:
            if is_expected_dns_error(e):
                return SectionFailure(domain, self.section, FailureReason.DNS_ERROR, str(e))
            if is_expected_tls_error(e):
                return SectionFailure(
                    domain, self.section, FailureReason.TLS_ERROR, "Invalid SSL certificate"
                )
            self._log_warn("failed to fetch headers", {"domain": domain, "error": str(e)})
            return None

        try:
            status_message: Optional[str] = HTTPStatus(response.status_code).phrase
        except ValueError:
            status_message = None

        return {
            "headers": normalize_headers(
                [{"name": k, "value": v} for k, v in response.headers.items()]
            ),
            "status": response.status_code,
            "status_message": status_message,
        }

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class RdapRegistrationFetcher(SectionFetcher, LoggingMixin):
    """
    Registration data from RDAP.

    404 means the domain is not registered (permanent); 429, 5xx and
    transport errors are transient.
    """

    section = Section.REGISTRATION
    _component = "registration_fetcher"

    def __init__(
        self,
        endpoint: str = "https://rdap.org",
        timeout: float = 10.0,
        tld_endpoints: Optional[dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._tld_endpoints = {k.lower(): v.rstrip("/") for k, v in (tld_endpoints or {}).items()}
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._logger = logger

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._client

    def endpoint_for(self, domain: str) -> str:
        tld = extract_tld(domain) or ""
        return self._tld_endpoints.get(tld, self._endpoint)

    async def fetch(self, domain: str) -> FetchOutcome:
        url = f"{self.endpoint_for(domain)}/domain/{domain}"
        try:
            response = await self._get_client().get(
                url,
                headers={"Accept": "application/rdap+json, application/json"},
            )
        except httpx.HTTPError as e:
            self._log_warn("rdap request failed", {"domain": domain, "error": str(e)})
            return None

        if response.status_code == 404:
            return SectionFailure(domain, self.section, FailureReason.UNREGISTERED, "RDAP 404")
        if response.status_code in (400, 501):
            return SectionFailure(
                domain, self.section, FailureReason.UNSUPPORTED_TLD,
                f"RDAP HTTP {response.status_code}",
            )
        if response.status_code != 200:
            self._log_warn(
                "rdap server error",
                {"domain": domain, "response_status_code": response.status_code},
            )
            return None

        try:
            data = response.json()
        except ValueError as e:
            self._log_warn("rdap response not json", {"domain": domain, "error": str(e)})
            return None
        return self.parse(data)

    @staticmethod
    def parse(data: dict) -> dict:
        """Extract the registration fields we store; ignore everything else."""
        status = data.get("status", [])
        if not isinstance(status, list):
            status = [status] if status else []

        events = [
            {"action": e["eventAction"], "date": e["eventDate"]}
            for e in data.get("events", []) or []
            if isinstance(e, dict) and e.get("eventAction") and e.get("eventDate")
        ]
        nameservers = [
            ns.get("ldhName") or ns.get("unicodeName")
            for ns in data.get("nameservers", []) or []
            if isinstance(ns, dict) and (ns.get("ldhName") or ns.get("unicodeName"))
        ]
        return {
            "domain_name": data.get("ldhName") or data.get("unicodeName", ""),
            "status": status,
            "events": events,
            "nameservers": [ns.lower() for ns in nameservers],
        }

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def build_fetchers(
    simulation_mode: bool,
    timeout: float = 10.0,
    logger: Optional[AuditLogger] = None,
) -> dict[Section, SectionFetcher]:
    """
    Default fetcher per section.

    Headers and registration have network fetchers; the remaining sections
    use simulated fetchers until an application registers its own.
    """
    fetchers: dict[Section, SectionFetcher] = {
        section: SimulatedFetcher(section) for section in ALL_SECTIONS
    }
    if not simulation_mode:
        fetchers[Section.HEADERS] = HttpHeadersFetcher(logger=logger)
        fetchers[Section.REGISTRATION] = RdapRegistrationFetcher(timeout=timeout, logger=logger)
    return fetchers
