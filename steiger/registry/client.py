"""OCI distribution client.

This module handles:
- Parsing destination repositories and choosing the transport per host
- Authenticating with Basic or Bearer token challenges
- Retrying transient failures with exponential backoff
- Skipping pushes whose content the registry already holds
- Uploading missing blobs and putting manifests
"""

from __future__ import annotations

import base64
import logging
import re
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from steiger.image.layout import (
    DOCKER_MANIFEST,
    OCI_INDEX,
    OCI_MANIFEST,
    Descriptor,
    ImageArtifact,
    ImageError,
    compute_digest,
    validate_digest,
)
from steiger.registry.credentials import (
    AnonymousCredentials,
    CredentialProvider,
    Credentials,
)
from steiger.types import ImageRef, PushOutcome, PushStatus

logger = logging.getLogger(__name__)

# Manifest types accepted when querying manifests
MANIFEST_ACCEPT = ", ".join(
    [
        OCI_MANIFEST,
        OCI_INDEX,
        DOCKER_MANIFEST,
        "application/vnd.docker.distribution.manifest.list.v2+json",
    ]
)

# Hosts always reached over plain HTTP
PLAINTEXT_HOSTS = ("localhost", "127.0.0.1", "::1")

# Docker Hub API endpoint
DOCKER_HUB_API = "registry-1.docker.io"

# Upload chunk size for blob bodies (bytes)
UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MB

# Blob uploads running concurrently for one image
BLOB_CONCURRENCY = 16

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class PushError(Exception):
    """Raised when a registry operation fails."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Repository:
    """Destination repository: a registry host plus an optional namespace.

    Attributes:
        host: Registry host as written by the user (may include a port).
        namespace: Path prefix inside the registry ('' for none).
    """

    host: str
    namespace: str = ""

    @classmethod
    def parse(cls, value: str) -> Repository:
        """Parse ``host[/namespace...]``.

        A first component without a dot or port (other than 'localhost')
        is a Docker Hub namespace.

        Raises:
            PushError: With code "invalid_reference" for an empty or
                malformed repository.
        """
        value = value.strip().rstrip("/")
        if not value or "//" in value or "@" in value or " " in value:
            raise PushError(f"Invalid repository: {value!r}", code="invalid_reference")
        first, _, rest = value.partition("/")
        if "." in first or ":" in first or first == "localhost":
            return cls(host=first, namespace=rest)
        return cls(host="docker.io", namespace=value)

    @property
    def api_host(self) -> str:
        if self.host in ("docker.io", "index.docker.io"):
            return DOCKER_HUB_API
        return self.host

    @property
    def hostname(self) -> str:
        """Host without the port."""
        if self.host.startswith("["):
            return self.host[1 : self.host.find("]")]
        return self.host.rsplit(":", 1)[0] if ":" in self.host else self.host

    def path(self, name: str) -> str:
        """Repository path of an image inside the registry."""
        path = f"{self.namespace}/{name}" if self.namespace else name
        if self.api_host == DOCKER_HUB_API and "/" not in path:
            path = f"library/{path}"
        return path

    def reference(self, name: str) -> str:
        """User-facing repository of an image, as written in output."""
        prefix = self.host if not self.namespace else f"{self.host}/{self.namespace}"
        return f"{prefix}/{name}"


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a WWW-Authenticate header into (scheme, params)."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


def _read_chunks(path: Path) -> Iterator[bytes]:
    with path.open("rb") as f:
        while chunk := f.read(UPLOAD_CHUNK_SIZE):
            yield chunk


class RegistryClient:
    """Pushes image artifacts to OCI registries.

    Safe to share between threads: the HTTP client is thread-safe and the
    token cache is guarded by a lock.
    """

    def __init__(
        self,
        credentials: CredentialProvider | None = None,
        insecure_registries: list[str] | tuple[str, ...] = (),
        timeout: float = 60.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.credentials = credentials or AnonymousCredentials()
        self.insecure_registries = set(insecure_registries)
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._tokens: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def base_url(self, repository: Repository, insecure: bool = False) -> str:
        """Return the API base URL, over HTTP for plaintext hosts."""
        plaintext = (
            insecure
            or repository.host in self.insecure_registries
            or repository.hostname in self.insecure_registries
            or repository.hostname in PLAINTEXT_HOSTS
        )
        scheme = "http" if plaintext else "https"
        return f"{scheme}://{repository.api_host}/v2"

    # Authentication

    def _cached_token(self, host: str, scope: str) -> str | None:
        with self._lock:
            return self._tokens.get((host, scope))

    def _authenticate(self, challenge: str, host: str, scope: str) -> str:
        """Answer an authentication challenge and cache the header value.

        Raises:
            PushError: If the challenge cannot be answered.
        """
        scheme, params = parse_challenge(challenge)
        creds = self.credentials.get(host)

        if scheme == "basic":
            if creds is None:
                raise PushError(
                    f"Registry {host} requires credentials", code="auth_rejected"
                )
            raw = f"{creds.username}:{creds.password}".encode()
            header = f"Basic {base64.b64encode(raw).decode()}"
        elif scheme == "bearer":
            header = f"Bearer {self._fetch_token(params, host, scope, creds)}"
        else:
            raise PushError(
                f"Unsupported authentication scheme from {host}: {scheme}",
                code="auth_rejected",
            )

        with self._lock:
            self._tokens[(host, scope)] = header
        return header

    def _fetch_token(
        self,
        params: dict[str, str],
        host: str,
        scope: str,
        creds: Credentials | None,
    ) -> str:
        realm = params.get("realm")
        if not realm:
            raise PushError(f"Bearer challenge from {host} has no realm", code="auth_rejected")

        query = {"scope": scope}
        if "service" in params:
            query["service"] = params["service"]
        auth = (creds.username, creds.password) if creds is not None else None

        logger.debug("Requesting token from %s for %s", realm, scope)
        try:
            response = self._client.get(realm, params=query, auth=auth)
        except httpx.RequestError as e:
            raise PushError(
                f"Network error fetching token from {realm}: {e}", code="network_error"
            ) from e

        if response.status_code in (401, 403):
            raise PushError(
                f"Token request to {realm} was rejected ({response.status_code})",
                code="auth_rejected",
            )
        if response.status_code != 200:
            raise PushError(
                f"Token request to {realm} failed: {response.status_code}",
                code="registry_error",
            )

        data = response.json()
        token = data.get("token") or data.get("access_token")
        if not token:
            raise PushError(f"Token response from {realm} has no token", code="auth_rejected")
        return token

    # Transport

    def _request(
        self,
        method: str,
        url: str,
        *,
        host: str,
        scope: str,
        headers: dict[str, str] | None = None,
        content: Callable[[], Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request with authentication and retries.

        Args:
            method: HTTP method.
            url: Absolute URL.
            host: Registry host used for credentials and the token cache.
            scope: Token scope of the request.
            headers: Extra headers.
            content: Factory returning the body, called once per attempt.
            params: Query parameters.

        Returns:
            The final response (any status except retried ones).

        Raises:
            PushError: With code "auth_rejected" or "network_error".
        """
        attempt = 0
        authenticated = False
        last_error = ""

        while True:
            request_headers = dict(headers or {})
            token = self._cached_token(host, scope)
            if token:
                request_headers["Authorization"] = token

            try:
                response = self._client.request(
                    method,
                    url,
                    headers=request_headers,
                    content=content() if content is not None else None,
                    params=params,
                )
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                response = None

            if response is not None:
                if response.status_code == 401:
                    if authenticated or "WWW-Authenticate" not in response.headers:
                        raise PushError(
                            f"Authentication rejected by {host} for {method} {url}",
                            code="auth_rejected",
                        )
                    self._authenticate(response.headers["WWW-Authenticate"], host, scope)
                    authenticated = True
                    continue
                if response.status_code == 403:
                    raise PushError(
                        f"Access denied by {host} for {method} {url}",
                        code="auth_rejected",
                    )
                if response.status_code != 429 and response.status_code < 500:
                    return response
                last_error = f"HTTP {response.status_code}"

            if attempt >= self.max_retries:
                raise PushError(
                    f"{method} {url} failed after {attempt + 1} attempt(s): {last_error}",
                    code="network_error",
                )
            delay = self.backoff * (2**attempt)
            logger.warning(
                "%s %s failed (%s), retrying in %.1fs", method, url, last_error, delay
            )
            self._sleep(delay)
            attempt += 1

    # Registry operations

    def manifest_digest(
        self, repository: Repository, name: str, reference: str, insecure: bool = False
    ) -> str | None:
        """Return the digest a manifest reference resolves to, if it exists.

        Anything other than a found manifest (missing repository, unknown
        tag, unexpected status) is inconclusive and returns None.
        """
        path = repository.path(name)
        url = f"{self.base_url(repository, insecure)}/{path}/manifests/{reference}"
        response = self._request(
            "HEAD",
            url,
            host=repository.host,
            scope=f"repository:{path}:pull,push",
            headers={"Accept": MANIFEST_ACCEPT},
        )
        if response.status_code != 200:
            if response.status_code != 404:
                logger.info(
                    "Manifest query for %s:%s returned %d",
                    path,
                    reference,
                    response.status_code,
                )
            return None

        digest = response.headers.get("Docker-Content-Digest")
        if digest:
            return digest
        if reference.startswith("sha256:"):
            return reference

        # Registry did not report a digest; compute it from the body
        response = self._request(
            "GET",
            url,
            host=repository.host,
            scope=f"repository:{path}:pull,push",
            headers={"Accept": MANIFEST_ACCEPT},
        )
        if response.status_code != 200:
            return None
        return compute_digest(response.content)

    def blob_exists(
        self, repository: Repository, name: str, digest: str, insecure: bool = False
    ) -> bool:
        path = repository.path(name)
        response = self._request(
            "HEAD",
            f"{self.base_url(repository, insecure)}/{path}/blobs/{digest}",
            host=repository.host,
            scope=f"repository:{path}:pull,push",
        )
        return response.status_code == 200

    def upload_blob(
        self,
        repository: Repository,
        name: str,
        descriptor: Descriptor,
        source: Path,
        insecure: bool = False,
    ) -> None:
        """Upload a blob monolithically (POST session, then PUT with digest).

        Raises:
            PushError: If the registry refuses the upload.
        """
        path = repository.path(name)
        scope = f"repository:{path}:pull,push"
        base = self.base_url(repository, insecure)

        response = self._request(
            "POST", f"{base}/{path}/blobs/uploads/", host=repository.host, scope=scope
        )
        if response.status_code != 202 or "Location" not in response.headers:
            raise PushError(
                f"Failed to start upload of {descriptor.digest} to {path}: "
                f"{response.status_code}",
                code="registry_error",
            )

        location = httpx.URL(base).join(response.headers["Location"])
        response = self._request(
            "PUT",
            str(location),
            host=repository.host,
            scope=scope,
            headers={
                "Content-Type": "application/octet-stream",
                "Content-Length": str(descriptor.size),
            },
            content=lambda: _read_chunks(source),
            params={"digest": descriptor.digest},
        )
        if response.status_code not in (201, 204):
            raise PushError(
                f"Failed to upload {descriptor.digest} to {path}: {response.status_code}",
                code="registry_error",
            )
        logger.debug("Uploaded blob %s (%d bytes) to %s", descriptor.digest, descriptor.size, path)

    def put_manifest(
        self,
        repository: Repository,
        name: str,
        reference: str,
        manifest: bytes,
        media_type: str,
        insecure: bool = False,
    ) -> None:
        """Put a manifest under a tag or digest.

        Raises:
            PushError: If the registry refuses the manifest.
        """
        path = repository.path(name)
        response = self._request(
            "PUT",
            f"{self.base_url(repository, insecure)}/{path}/manifests/{reference}",
            host=repository.host,
            scope=f"repository:{path}:pull,push",
            headers={"Content-Type": media_type},
            content=lambda: manifest,
        )
        if response.status_code not in (200, 201):
            raise PushError(
                f"Failed to put manifest {path}:{reference}: "
                f"{response.status_code} {response.text[:200]}",
                code="registry_error",
            )

    def _upload_missing(
        self,
        artifact: ImageArtifact,
        repository: Repository,
        name: str,
        insecure: bool,
    ) -> int:
        blobs: dict[str, tuple[Descriptor, Path]] = {}
        for image in artifact.images:
            for descriptor in image.blobs():
                blobs.setdefault(descriptor.digest, (descriptor, image.blob_path(descriptor)))

        def push_one(item: tuple[Descriptor, Path]) -> int:
            descriptor, source = item
            if self.blob_exists(repository, name, descriptor.digest, insecure):
                return 0
            self.upload_blob(repository, name, descriptor, source, insecure)
            return 1

        with ThreadPoolExecutor(max_workers=BLOB_CONCURRENCY) as pool:
            return sum(pool.map(push_one, blobs.values()))

    def ensure_pushed(
        self,
        artifact: ImageArtifact,
        repo: str,
        name: str,
        tag: str | None = None,
        insecure: bool = False,
    ) -> PushOutcome:
        """Make sure an artifact exists in the destination repository.

        The manifest digest is queried first. When the registry already
        holds it (and the tag, if any, points at it) nothing is transferred.

        Args:
            artifact: The built image artifact.
            repo: Destination repository (``host[/namespace]``).
            name: Image name appended to the repository.
            tag: Human tag, or None for a digest-only reference.
            insecure: Use plain HTTP for this registry.

        Returns:
            PushOutcome with the final reference.

        Raises:
            PushError: If the digest is malformed or a registry operation fails.
        """
        try:
            digest = validate_digest(artifact.digest)
        except ImageError as e:
            raise PushError(str(e), code="invalid_digest") from e

        repository = Repository.parse(repo)
        image = ImageRef(
            name=name,
            repository=repository.reference(name),
            digest=digest,
            tag=tag,
        )

        if self.manifest_digest(repository, name, digest, insecure) is not None:
            if tag is None:
                logger.info("%s already present, skipping push", image.digest_reference)
                return PushOutcome(image=image, status=PushStatus.SKIPPED)
            if self.manifest_digest(repository, name, tag, insecure) == digest:
                logger.info("%s already up to date, skipping push", image.reference)
                return PushOutcome(image=image, status=PushStatus.SKIPPED)
            self.put_manifest(
                repository, name, tag, artifact.manifest, artifact.media_type, insecure
            )
            logger.info("Tagged existing %s as %s", image.digest_reference, image.reference)
            return PushOutcome(image=image, status=PushStatus.PUSHED)

        uploaded = self._upload_missing(artifact, repository, name, insecure)
        if artifact.is_index:
            for local in artifact.images:
                self.put_manifest(
                    repository, name, local.digest, local.manifest, local.media_type, insecure
                )
        self.put_manifest(
            repository, name, tag or digest, artifact.manifest, artifact.media_type, insecure
        )
        logger.info("Pushed %s (%d blob(s) uploaded)", image.reference, uploaded)
        return PushOutcome(image=image, status=PushStatus.PUSHED, blobs_uploaded=uploaded)


__all__ = ["PushError", "RegistryClient", "Repository", "parse_challenge"]
