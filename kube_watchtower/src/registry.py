from __future__ import annotations

import logging
import threading

import requests

from kube_watchtower.src.credentials import RegistryCredential
from kube_watchtower.src.models import check_cancelled
from kube_watchtower.src.reference import (
    DOCKER_HUB_ALIASES,
    DOCKER_HUB_API_HOST,
    ImageReference,
    registry_host,
    repository_path,
)

LOGGER = logging.getLogger(__name__)

# Index and manifest-list types first so multi-arch images report the same
# digest the kubelet resolves when pulling by tag.
MANIFEST_ACCEPT_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)
DIGEST_HEADER = "Docker-Content-Digest"
USER_AGENT = "kube-watchtower"


class DigestFetchError(RuntimeError):
    """Raised when the registry does not return a digest for a reference."""


def parse_auth_challenge(header: str | None) -> tuple[str, dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into its scheme and parameters."""
    if not header:
        return "", {}
    scheme, _, params_text = header.strip().partition(" ")
    params: dict[str, str] = {}
    for part in params_text.split(","):
        key, separator, value = part.partition("=")
        if separator:
            params[key.strip().lower()] = value.strip().strip('"')
    return scheme.lower(), params


def api_host(repository: str) -> str:
    host = registry_host(repository)
    return DOCKER_HUB_API_HOST if host in DOCKER_HUB_ALIASES else host


class RegistryClient:
    """Resolves the digest currently published for ``repository:tag``.

    Speaks the Docker Registry HTTP API v2. Anonymous pulls follow the bearer
    token challenge; when a credential is supplied it is sent as basic auth to
    the token service, or directly to registries that use basic auth.
    """

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
        scheme: str = "https",
        logger: logging.Logger | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.scheme = scheme
        self.logger = logger or LOGGER

    def manifest_url(self, reference: ImageReference) -> str:
        host = api_host(reference.repository)
        path = repository_path(reference.repository)
        return f"{self.scheme}://{host}/v2/{path}/manifests/{reference.tag}"

    def get_digest(
        self,
        reference: ImageReference,
        credential: RegistryCredential | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        check_cancelled(cancel)
        url = self.manifest_url(reference)
        headers = {"Accept": ", ".join(MANIFEST_ACCEPT_TYPES)}
        try:
            response = self._request("HEAD", url, headers, reference, credential, cancel)
            digest = response.headers.get(DIGEST_HEADER)
            if not digest:
                # Some registries omit the digest header on HEAD responses.
                response = self._request("GET", url, headers, reference, credential, cancel)
                digest = response.headers.get(DIGEST_HEADER)
        except requests.RequestException as exc:
            raise DigestFetchError(f"Failed to inspect {reference.name}: {exc}") from exc

        if not digest:
            raise DigestFetchError(f"No digest header returned for {reference.name}")
        return digest

    def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        reference: ImageReference,
        credential: RegistryCredential | None,
        cancel: threading.Event | None,
    ) -> requests.Response:
        response = self.session.request(method, url, headers=headers, timeout=self.timeout_seconds)
        if response.status_code == 401:
            check_cancelled(cancel)
            scheme, params = parse_auth_challenge(response.headers.get("WWW-Authenticate"))
            auth_headers = dict(headers)
            if scheme == "bearer":
                token = self._bearer_token(params, reference, credential)
                auth_headers["Authorization"] = f"Bearer {token}"
                response = self.session.request(
                    method, url, headers=auth_headers, timeout=self.timeout_seconds
                )
            elif scheme == "basic" and credential is not None:
                response = self.session.request(
                    method,
                    url,
                    headers=auth_headers,
                    auth=(credential.username, credential.password),
                    timeout=self.timeout_seconds,
                )
        response.raise_for_status()
        return response

    def _bearer_token(
        self,
        params: dict[str, str],
        reference: ImageReference,
        credential: RegistryCredential | None,
    ) -> str:
        realm = params.get("realm")
        if not realm:
            raise DigestFetchError(f"Bearer challenge without realm for {reference.name}")

        query = {
            "scope": params.get("scope")
            or f"repository:{repository_path(reference.repository)}:pull"
        }
        if service := params.get("service"):
            query["service"] = service

        auth = None
        if credential is not None and credential.username:
            auth = (credential.username, credential.password)
            self.logger.debug("Using credentials for registry %s", credential.registry)

        response = self.session.get(realm, params=query, auth=auth, timeout=self.timeout_seconds)
        response.raise_for_status()
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise DigestFetchError(f"Token service returned no token for {reference.name}")
        return str(token)
