"""Remote image client — check, pull and push images against the registry.

Credential resolution order
---------------------------
1. Credentials passed explicitly to the constructor.
2. Environment-provided credentials (already loaded into ``BunciSettings``).
3. On-disk credential files (``registry_username_file`` / ``registry_token_file``).
4. Unauthenticated.

Read paths degrade to unauthenticated with a warning. Push is skipped when
no credentials are available; that is never fatal.

This is a lower layer: it reports structured outcomes and never decides
whether a failure is fatal.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from bunci.bridge.tart import RegistryClient, RegistryCredentials, TartError, VmStoreClient
from bunci.config import BunciSettings
from bunci.core.errors import RetryExhaustedError
from bunci.core.image_names import ImageNameCodec
from bunci.core.retry import retry_with_backoff
from bunci.models.images import VmSource
from bunci.models.versioning import VersionTuple

logger = logging.getLogger(__name__)


class OperationResult(BaseModel):
    """Outcome of a registry operation."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    skipped: bool = False
    reason: str = ""
    urls: list[str] = []


def _read_secret(path: Path | None) -> str:
    if path is None:
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def resolve_credentials(
    settings: BunciSettings,
    explicit: RegistryCredentials | None = None,
) -> RegistryCredentials | None:
    """Apply the credential resolution order; ``None`` means unauthenticated."""
    if explicit is not None and explicit.password:
        return explicit
    if settings.registry_password:
        return RegistryCredentials(
            username=settings.registry_username or settings.registry_org,
            password=settings.registry_password,
        )
    token = _read_secret(settings.registry_token_file)
    if token:
        username = _read_secret(settings.registry_username_file) or settings.registry_org
        return RegistryCredentials(username=username, password=token)
    return None


class RemoteImageClient:
    """Registry operations keyed by ``VersionTuple``.

    Parameters
    ----------
    registry:
        Pull/push backend.
    store:
        Local store, consulted to skip pulls of already-present images.
    codec:
        Builds registry URLs.
    settings:
        Credential sources and pull retry bounds.
    credentials:
        Explicit credentials; highest priority.
    """

    def __init__(
        self,
        registry: RegistryClient,
        store: VmStoreClient,
        codec: ImageNameCodec,
        settings: BunciSettings,
        *,
        credentials: RegistryCredentials | None = None,
        sleep=None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._codec = codec
        self._settings = settings
        self._credentials = resolve_credentials(settings, credentials)
        self._sleep = sleep
        self._warned_anonymous = False

    @property
    def authenticated(self) -> bool:
        return self._credentials is not None

    def url_for(self, t: VersionTuple) -> str:
        return self._codec.remote_url(t)

    def _read_credentials(self) -> RegistryCredentials | None:
        if self._credentials is None and not self._warned_anonymous:
            logger.warning(
                "No registry credentials configured; pulling from %s unauthenticated.",
                self._settings.registry_host,
            )
            self._warned_anonymous = True
        return self._credentials

    def present_locally(self, t: VersionTuple) -> bool:
        """True if the store already holds the pulled OCI image for *t*.

        OCI rows are matched by decoding their registry URL, so digest-pinned
        entries and images from other repositories never count.
        """
        try:
            entries = self._store.list()
        except TartError as exc:
            logger.debug("Could not list local store: %s", exc)
            return False
        return any(
            e.source == VmSource.OCI and self._codec.decode_remote(e.name) == t
            for e in entries
        )

    def pull(self, t: VersionTuple) -> OperationResult:
        """Pull the versioned image, retrying with fixed backoff."""
        url = self.url_for(t)
        credentials = self._read_credentials()

        def _attempt() -> bool:
            self._registry.pull(url, credentials)
            return True

        try:
            retry_with_backoff(
                _attempt,
                self._settings.pull_attempts,
                self._settings.pull_interval,
                description=f"pull {url}",
                retry_on=(TartError,),
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            logger.info("Remote image %s unavailable: %s", url, exc)
            return OperationResult(ok=False, reason=str(exc), urls=[url])
        logger.info("Pulled %s.", url)
        return OperationResult(ok=True, urls=[url])

    def exists(self, t: VersionTuple, *, force_remote_refresh: bool = False) -> bool:
        """Whether the registry holds *t*, implemented as an idempotent pull.

        Without *force_remote_refresh*, a matching OCI image already in the
        local store answers the question without touching the network.
        """
        if not force_remote_refresh and self.present_locally(t):
            logger.info("Remote image %s already cached locally.", self.url_for(t))
            return True
        return self.pull(t).ok

    def push(
        self,
        local_name: str,
        t: VersionTuple,
        *,
        include_latest: bool = True,
    ) -> OperationResult:
        """Push *local_name* under the versioned tag (and ``latest``)."""
        urls = [self.url_for(t)]
        if include_latest:
            urls.append(self._codec.latest_url(t))
        if self._credentials is None:
            logger.warning("No registry credentials; skipping push of %s.", local_name)
            return OperationResult(ok=False, skipped=True, reason="no credentials", urls=urls)
        try:
            self._registry.push(local_name, urls, self._credentials)
        except TartError as exc:
            logger.warning("Push of %s failed: %s", local_name, exc)
            return OperationResult(ok=False, reason=str(exc), urls=urls)
        logger.info("Pushed %s as %s.", local_name, ", ".join(urls))
        return OperationResult(ok=True, urls=urls)
