from __future__ import annotations

from dataclasses import dataclass

DEFAULT_TAG = "latest"
DOCKER_HUB_HOST = "index.docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"

# Host names that all refer to the public Docker Hub registry.
DOCKER_HUB_ALIASES = frozenset(
    {
        "index.docker.io",
        "docker.io",
        "registry-1.docker.io",
        "registry.hub.docker.com",
    }
)


@dataclass(frozen=True)
class ImageReference:
    """Parsed form of a container image string.

    ``repository`` keeps any registry host prefix exactly as declared
    (``ghcr.io/org/app``), so ``repository:tag`` round-trips to the string the
    workload was declared with.
    """

    repository: str
    tag: str = DEFAULT_TAG
    digest: str | None = None

    @property
    def registry(self) -> str:
        return registry_host(self.repository)

    @property
    def name(self) -> str:
        """Return ``repository:tag`` without any digest."""
        return f"{self.repository}:{self.tag}"

    def pinned(self, digest: str) -> str:
        """Return ``repository:tag@digest`` for pinning a rollout to one image version."""
        return f"{self.repository}:{self.tag}@{digest}"


def parse_reference(image: str) -> ImageReference:
    """Split an image string into repository, tag and digest.

    Parsing never fails for non-empty input. A ``:`` only starts a tag when it
    appears after the last ``/``, so registry ports (``localhost:5000/app``)
    stay part of the repository. Missing tags default to ``latest``.
    """
    remainder = image.strip()
    digest: str | None = None
    if "@" in remainder:
        remainder, _, digest_part = remainder.partition("@")
        digest = digest_part or None

    tag = DEFAULT_TAG
    last_slash = remainder.rfind("/")
    last_colon = remainder.rfind(":")
    if last_colon > last_slash:
        candidate = remainder[last_colon + 1 :]
        remainder = remainder[:last_colon]
        if candidate:
            tag = candidate

    repository = remainder or image.strip()
    return ImageReference(repository=repository, tag=tag, digest=digest)


def registry_host(repository: str) -> str:
    """Return the registry host a repository is pulled from.

    Single-segment names (``nginx``) and namespaced Docker Hub names
    (``library/nginx``) resolve to Docker Hub. The first path segment is a
    host only when it contains a dot or a port, or is ``localhost``.
    """
    if "/" not in repository:
        return DOCKER_HUB_HOST

    first, _, _ = repository.partition("/")
    if "." in first or ":" in first or first == "localhost":
        return first.lower()
    return DOCKER_HUB_HOST


def repository_path(repository: str) -> str:
    """Return the repository path without its registry host (``library/`` added for Hub)."""
    host = registry_host(repository)
    first, _, rest = repository.partition("/")
    path = rest if rest and first.lower() == host else repository
    if host in DOCKER_HUB_ALIASES and "/" not in path:
        path = f"library/{path}"
    return path


def normalize_registry(registry: str) -> str:
    """Normalize a registry key from a pull secret or image for comparison.

    Strips ``http://`` / ``https://``, any path (``index.docker.io/v1/``) and
    trailing slashes, and lowercases the host.
    """
    value = registry.strip().lower()
    for scheme in ("https://", "http://"):
        if value.startswith(scheme):
            value = value[len(scheme) :]
    value = value.rstrip("/")
    host, _, _ = value.partition("/")
    return host


def registries_match(image_registry: str, secret_registry: str) -> bool:
    """Return True when two registry hosts name the same registry.

    Hosts compare equal after normalization, and any two Docker Hub aliases
    are treated as the same registry.
    """
    left = normalize_registry(image_registry)
    right = normalize_registry(secret_registry)
    if left == right:
        return True
    return left in DOCKER_HUB_ALIASES and right in DOCKER_HUB_ALIASES


def digest_from_image_id(image_id: str | None) -> str | None:
    """Extract ``sha256:...`` from a container status ``imageID``.

    Runtimes report forms such as ``docker-pullable://nginx@sha256:abc`` or
    ``docker.io/library/nginx@sha256:abc``; anything without ``@`` carries no
    registry digest.
    """
    if not image_id or "@" not in image_id:
        return None
    return image_id.split("@", 1)[1] or None
