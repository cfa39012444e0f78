from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from kube_watchtower.src.kube import ClusterClient, TransportError
from kube_watchtower.src.models import check_cancelled
from kube_watchtower.src.reference import normalize_registry, registries_match, registry_host

DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
DOCKER_CFG_TYPE = "kubernetes.io/dockercfg"
DOCKER_CFG_KEY = ".dockercfg"


class CredentialDecodeError(ValueError):
    """Raised when a pull secret payload cannot be decoded."""


@dataclass(frozen=True)
class RegistryCredential:
    registry: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"RegistryCredential(registry={self.registry!r}, username={self.username!r})"


def _decode_secret_value(raw: str | bytes) -> bytes:
    """Secret ``data`` values arrive base64-encoded from the API server."""
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialDecodeError("secret data is not valid base64") from exc


def parse_docker_config(secret: Any) -> dict[str, dict[str, Any]]:
    """Return the ``registry -> auth entry`` map stored in a pull secret.

    Accepts ``kubernetes.io/dockerconfigjson`` (``{"auths": {...}}``) and the
    legacy ``kubernetes.io/dockercfg`` format (bare map).
    """
    secret_type = getattr(secret, "type", None)
    data = getattr(secret, "data", None) or {}
    if secret_type == DOCKER_CONFIG_JSON_TYPE:
        key, nested = DOCKER_CONFIG_JSON_KEY, True
    elif secret_type == DOCKER_CFG_TYPE:
        key, nested = DOCKER_CFG_KEY, False
    else:
        raise CredentialDecodeError(f"unsupported secret type {secret_type!r}")

    raw = data.get(key)
    if not raw:
        raise CredentialDecodeError(f"secret has no {key} entry")

    try:
        payload = json.loads(_decode_secret_value(raw))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise CredentialDecodeError(f"{key} is not valid JSON") from exc

    auths = payload.get("auths") if nested and isinstance(payload, dict) else payload
    if not isinstance(auths, dict):
        raise CredentialDecodeError(f"{key} has no registry map")
    return {str(k): v for k, v in auths.items() if isinstance(v, dict)}


def credential_from_entry(registry: str, entry: dict[str, Any]) -> RegistryCredential:
    """Build a credential from one auth entry.

    The combined base64 ``auth`` field is only consulted when the discrete
    ``username`` or ``password`` field is empty.
    """
    username = str(entry.get("username") or "")
    password = str(entry.get("password") or "")
    auth = entry.get("auth")
    if auth and (not username or not password):
        if not isinstance(auth, str):
            raise CredentialDecodeError("auth field is not a string")
        decoded = _decode_secret_value(auth).decode("utf-8", errors="replace")
        user_part, separator, pass_part = decoded.partition(":")
        if separator:
            username, password = user_part, pass_part
    return RegistryCredential(
        registry=normalize_registry(registry), username=username, password=password
    )


class CredentialResolver:
    """Resolves registry credentials for an image from a workload's pull secrets.

    Secrets are read fresh on every call so rotated credentials take effect on
    the next cycle. A secret that cannot be read or decoded is logged and
    skipped; when nothing matches the caller falls back to anonymous access.
    """

    def __init__(self, cluster: ClusterClient, logger: logging.Logger | None = None) -> None:
        self.cluster = cluster
        self.logger = logger or logging.getLogger(__name__)

    def _entries(
        self, namespace: str, secret_names: Iterable[str], cancel: threading.Event | None
    ) -> Iterator[tuple[str, str, dict[str, Any]]]:
        for secret_name in secret_names:
            check_cancelled(cancel)
            try:
                secret = self.cluster.get_secret(namespace, secret_name)
            except ApiException as exc:
                self.logger.debug(
                    "Failed to read pull secret %s/%s: %s", namespace, secret_name, exc.reason
                )
                continue
            except TransportError as exc:
                self.logger.warning(
                    "Failed to read pull secret %s/%s: %s", namespace, secret_name, exc
                )
                continue
            try:
                auths = parse_docker_config(secret)
            except CredentialDecodeError as exc:
                self.logger.warning(
                    "Ignoring pull secret %s/%s: %s", namespace, secret_name, exc
                )
                continue
            for registry, entry in auths.items():
                yield secret_name, registry, entry

    def resolve(
        self,
        namespace: str,
        secret_names: Iterable[str],
        repository: str,
        cancel: threading.Event | None = None,
    ) -> RegistryCredential | None:
        image_registry = registry_host(repository)
        for secret_name, registry, entry in self._entries(namespace, secret_names, cancel):
            if not registries_match(image_registry, registry):
                continue
            try:
                credential = credential_from_entry(registry, entry)
            except CredentialDecodeError:
                self.logger.warning(
                    "Failed to decode auth for registry %s in secret %s/%s",
                    registry,
                    namespace,
                    secret_name,
                )
                continue
            self.logger.debug(
                "Found matching credentials for registry %s in secret %s/%s",
                registry,
                namespace,
                secret_name,
            )
            return credential

        self.logger.debug("No matching credentials found for registry %s", image_registry)
        return None
