from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import httpx
import jwt

from .errors import LinkageFetchError, LinkageValidationError

logger = logging.getLogger(__name__)

LINKED_DOMAINS = "LinkedDomains"
DOMAIN_LINKAGE_CREDENTIAL = "DomainLinkageCredential"
DID_CONFIGURATION_PATH = ".well-known/did-configuration.json"


@dataclass
class VerificationMethod:
    id: str
    controller: str
    type: str = ""
    public_key_jwk: Optional[Dict[str, Any]] = None

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "VerificationMethod":
        if not isinstance(raw, dict):
            raise ValueError("verification method must be object")
        method_id = raw.get("id")
        controller = raw.get("controller")
        if not isinstance(method_id, str) or not isinstance(controller, str):
            raise ValueError("verification method requires id and controller")
        jwk = raw.get("publicKeyJwk")
        return cls(method_id, controller, str(raw.get("type", "")), jwk if isinstance(jwk, dict) else None)


@dataclass
class Service:
    id: str
    types: List[str]
    service_endpoint: Any

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "Service":
        if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
            raise ValueError("service requires id")
        types = raw.get("type")
        if isinstance(types, str):
            types = [types]
        if not isinstance(types, list) or not all(isinstance(t, str) for t in types):
            raise ValueError("service type must be string or list of strings")
        return cls(raw["id"], list(types), raw.get("serviceEndpoint"))


@dataclass
class IdentityDocument:
    id: str
    methods: List[VerificationMethod] = field(default_factory=list)
    services: List[Service] = field(default_factory=list)

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "IdentityDocument":
        if isinstance(raw, dict) and isinstance(raw.get("doc"), dict):
            raw = raw["doc"]
        if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
            raise ValueError("identity document requires id")
        methods: List[VerificationMethod] = []
        seen: set = set()
        for key in ("verificationMethod", "authentication", "assertionMethod", "capabilityInvocation", "capabilityDelegation", "keyAgreement"):
            for entry in raw.get(key) or []:
                if isinstance(entry, dict):
                    method = VerificationMethod.from_json(entry)
                    if method.id not in seen:
                        seen.add(method.id)
                        methods.append(method)
        services = [Service.from_json(s) for s in raw.get("service") or []]
        return cls(raw["id"], methods, services)

    def resolve_method(self, kid: Optional[str]) -> Optional[VerificationMethod]:
        if not kid:
            return None
        full = self.id + kid if kid.startswith("#") else kid
        for method in self.methods:
            method_full = self.id + method.id if method.id.startswith("#") else method.id
            if method_full == full:
                return method
        return None

    def find_service(self, service_type: str) -> Optional[Service]:
        for service in self.services:
            if service_type in service.types:
                return service
        return None


@dataclass(frozen=True)
class UrlEndpoint:
    url: str


@dataclass(frozen=True)
class UrlSetEndpoint:
    urls: Tuple[str, ...]


@dataclass(frozen=True)
class UrlMapEndpoint:
    entries: Tuple[Tuple[str, Tuple[str, ...]], ...]


ServiceEndpoint = Union[UrlEndpoint, UrlSetEndpoint, UrlMapEndpoint]


def parse_service_endpoint(raw: Any) -> ServiceEndpoint:
    if isinstance(raw, str):
        return UrlEndpoint(raw)
    if isinstance(raw, list) and all(isinstance(u, str) for u in raw):
        return UrlSetEndpoint(tuple(raw))
    if isinstance(raw, dict) and all(
        isinstance(k, str) and isinstance(v, list) and all(isinstance(u, str) for u in v)
        for k, v in raw.items()
    ):
        return UrlMapEndpoint(tuple((k, tuple(v)) for k, v in raw.items()))
    raise ValueError(f"unsupported service endpoint shape: {type(raw).__name__}")


def first_endpoint_url(endpoint: ServiceEndpoint) -> Optional[str]:
    if isinstance(endpoint, UrlEndpoint):
        return endpoint.url
    if isinstance(endpoint, UrlSetEndpoint):
        return endpoint.urls[0] if endpoint.urls else None
    if isinstance(endpoint, UrlMapEndpoint):
        if endpoint.entries and endpoint.entries[0][1]:
            return endpoint.entries[0][1][0]
        return None
    raise TypeError(f"not a service endpoint: {endpoint!r}")


def endpoint_urls(endpoint: ServiceEndpoint) -> List[str]:
    if isinstance(endpoint, UrlEndpoint):
        return [endpoint.url]
    if isinstance(endpoint, UrlSetEndpoint):
        return list(endpoint.urls)
    return [u for _, urls in endpoint.entries for u in urls]


def normalize_domain(url: str) -> str:
    candidate = url.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate
    try:
        host = urlsplit(candidate).hostname
    except ValueError as exc:
        raise ValueError(f"invalid domain url: {url!r}") from exc
    if not host:
        raise ValueError(f"no host in domain url: {url!r}")
    if host.startswith("www."):
        host = host[len("www."):]
    return f"https://{host}/"


def _origin(url: str) -> Tuple[str, str, Optional[int]]:
    parts = urlsplit(url.strip() if "://" in url else "https://" + url.strip())
    scheme = parts.scheme.lower()
    port = parts.port or {"https": 443, "http": 80}.get(scheme)
    return scheme, (parts.hostname or "").lower(), port


def is_compact_jws(token: Any) -> bool:
    return isinstance(token, str) and len(token.split(".")) == 3


@dataclass
class DomainLinkageConfiguration:
    linked_dids: List[str]
    context: Any = None

    @classmethod
    def from_json(cls, raw: Any) -> "DomainLinkageConfiguration":
        if not isinstance(raw, dict):
            raise LinkageValidationError("did configuration must be object")
        linked = raw.get("linked_dids")
        if not isinstance(linked, list) or not linked:
            raise LinkageValidationError("linked_dids must be a non-empty list")
        if not all(isinstance(t, str) for t in linked):
            raise LinkageValidationError("linked_dids entries must be strings")
        return cls(list(linked), raw.get("@context"))


class JwtDomainLinkageValidator:
    """Validates a DID configuration resource against a DID document.

    Exactly one credential in ``linked_dids`` must be issued by the document;
    it must be signed by one of the document's verification methods and bind
    the document to ``domain``'s origin.
    """

    def __init__(self, algorithms: Sequence[str] = ("EdDSA",), leeway_seconds: int = 0):
        self.algorithms = list(algorithms)
        self.leeway_seconds = leeway_seconds

    def validate_linkage(
        self,
        document: IdentityDocument,
        configuration: DomainLinkageConfiguration,
        domain: str,
    ) -> Dict[str, Any]:
        issued: List[str] = []
        for token in configuration.linked_dids:
            try:
                unverified = jwt.decode(token, options={"verify_signature": False})
            except jwt.PyJWTError as exc:
                raise LinkageValidationError(f"malformed domain linkage credential: {exc}") from exc
            if unverified.get("iss") == document.id:
                issued.append(token)
        if not issued:
            raise LinkageValidationError(f"no domain linkage credential issued by {document.id}")
        if len(issued) > 1:
            raise LinkageValidationError(f"multiple domain linkage credentials issued by {document.id}")
        return self.validate_credential(issued[0], document, domain)

    def validate_credential(self, token: str, document: IdentityDocument, domain: str) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise LinkageValidationError(f"malformed credential header: {exc}") from exc
        method = document.resolve_method(header.get("kid"))
        if method is None:
            raise LinkageValidationError("credential kid does not match a verification method")
        if method.public_key_jwk is None:
            raise LinkageValidationError(f"verification method {method.id} has no publicKeyJwk")

        try:
            key = jwt.PyJWK(method.public_key_jwk)
            claims = jwt.decode(
                token,
                key.key,
                algorithms=self.algorithms,
                leeway=self.leeway_seconds,
                options={"verify_aud": False, "require": ["iss", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise LinkageValidationError("credential expired") from exc
        except jwt.ImmatureSignatureError as exc:
            raise LinkageValidationError("credential not yet valid") from exc
        except jwt.PyJWTError as exc:
            raise LinkageValidationError(f"invalid credential: {exc}") from exc

        if claims.get("sub") != document.id:
            raise LinkageValidationError("credential subject does not match document")
        vc = claims.get("vc")
        if not isinstance(vc, dict):
            raise LinkageValidationError("credential payload has no vc claim")
        types = vc.get("type")
        if isinstance(types, str):
            types = [types]
        if not isinstance(types, list) or DOMAIN_LINKAGE_CREDENTIAL not in types:
            raise LinkageValidationError(f"credential type must include {DOMAIN_LINKAGE_CREDENTIAL}")
        subject = vc.get("credentialSubject")
        if not isinstance(subject, dict) or subject.get("id") != document.id:
            raise LinkageValidationError("credentialSubject.id does not match document")
        origin = subject.get("origin")
        if not isinstance(origin, str) or _origin(origin) != _origin(domain):
            raise LinkageValidationError(f"credential origin {origin!r} does not match {domain!r}")
        return claims


async def fetch_did_configuration(
    domain: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    now_ms: Optional[int] = None,
    timeout_seconds: float = 10.0,
) -> Any:
    url = domain + DID_CONFIGURATION_PATH
    params = {"ts": str(now_ms if now_ms is not None else int(time.time() * 1000))}
    owns_http = http is None
    client = http or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)
    try:
        resp = await client.get(url, params=params, headers={"Accept": "application/json"})
    except httpx.TransportError as exc:
        raise LinkageFetchError(f"could not fetch {url}: {exc!r}", url=url) from exc
    finally:
        if owns_http:
            await client.aclose()
    if not 200 <= resp.status_code < 300:
        raise LinkageFetchError(f"fetching {url} returned HTTP {resp.status_code}", url=url, status_code=resp.status_code)
    try:
        return resp.json()
    except ValueError as exc:
        raise LinkageFetchError(f"{url} did not return json", url=url, status_code=resp.status_code) from exc


async def validate_linkage(
    document: Union[IdentityDocument, Dict[str, Any]],
    did: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    validator: Optional[JwtDomainLinkageValidator] = None,
    clock: Callable[[], float] = time.time,
) -> bool:
    """Check that ``document``'s LinkedDomains service is backed by its domain.

    Returns False for every "not linked" outcome. Only failures to fetch the
    well-known resource (``LinkageFetchError``) propagate.
    """
    if not isinstance(document, IdentityDocument):
        document = IdentityDocument.from_json(document)

    if not any(m.controller == did for m in document.methods):
        logger.info(f"no verification method controlled by {did}")
        return False
    service = document.find_service(LINKED_DOMAINS)
    if service is None:
        logger.info(f"{did} declares no {LINKED_DOMAINS} service")
        return False

    try:
        endpoint = parse_service_endpoint(service.service_endpoint)
    except ValueError as exc:
        logger.warning(f"service {service.id}: {exc}")
        return False
    endpoint_url = first_endpoint_url(endpoint)
    if not endpoint_url:
        logger.info(f"service {service.id} has no domain")
        return False
    try:
        domain = normalize_domain(endpoint_url)
    except ValueError as exc:
        logger.warning(f"service {service.id}: {exc}")
        return False

    body = await fetch_did_configuration(domain, http=http, now_ms=int(clock() * 1000))
    linked = body.get("linked_dids") if isinstance(body, dict) else None
    if not isinstance(linked, list) or not linked:
        logger.info(f"{domain} publishes no linked_dids")
        return False
    if not is_compact_jws(linked[0]):
        logger.info(f"{domain} linked_dids[0] is not a compact jws")
        return False

    validator = validator or JwtDomainLinkageValidator()
    try:
        configuration = DomainLinkageConfiguration.from_json(body)
        validator.validate_linkage(document, configuration, endpoint_url)
    except (LinkageValidationError, ValueError) as exc:
        logger.warning(f"domain linkage validation failed for {did} at {domain}: {exc}")
        return False
    return True


validateLinkage = validate_linkage
