"""Image builder — produce a versioned image by running the bootstrap.

Build sequence
--------------
1. Delete any stale image already holding the target name.
2. Clone the base (a compatible local image or the stock OS image) to the
   target name and apply cpu/memory.
3. Boot with the workspace shared, wait for network and shell.
4. Run the bootstrap script with ``BUN_VERSION`` exported, from the shared
   workspace or, when the share could not be attached, from an uploaded copy.
5. Re-probe the live VM; the image must carry the full toolchain.
6. Graceful shutdown, then an optional best-effort push.

Any failure after the clone deletes the half-built image and raises
:class:`ImageBuildError` naming the step.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path

from bunci.bridge.ssh import ShellFactory
from bunci.bridge.tart import TartError, VmStoreClient
from bunci.config import BunciSettings
from bunci.core.errors import ImageBuildError, VmSessionError
from bunci.core.image_names import ImageNameCodec
from bunci.core.local_index import LocalImageIndex
from bunci.core.remote_client import RemoteImageClient
from bunci.core.session import VmResources, VmSession
from bunci.core.validator import ImageValidator
from bunci.models.decisions import BuildIncremental, BuildNew
from bunci.models.versioning import VersionTuple

logger = logging.getLogger(__name__)

_UPLOAD_DIR = "/tmp/bunci-bootstrap"


class ImageBuilder:
    """Builds versioned images from a build decision.

    Parameters
    ----------
    store:
        Local VM store.
    shell_factory:
        Opens guest shells.
    codec:
        Names the produced image.
    index:
        Re-checks existence before deleting.
    validator:
        Probes the freshly bootstrapped VM.
    remote:
        Pushes the result when enabled.
    settings:
        Workspace, bootstrap script, resources and the push switch.
    """

    def __init__(
        self,
        store: VmStoreClient,
        shell_factory: ShellFactory,
        codec: ImageNameCodec,
        index: LocalImageIndex,
        validator: ImageValidator,
        remote: RemoteImageClient,
        settings: BunciSettings,
        *,
        sleep=None,
    ) -> None:
        self._store = store
        self._shell_factory = shell_factory
        self._codec = codec
        self._index = index
        self._validator = validator
        self._remote = remote
        self._settings = settings
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def bootstrap_script(self) -> Path:
        script = Path(self._settings.bootstrap_script)
        if not script.is_absolute():
            script = Path(self._settings.workspace) / script
        return script

    def _discard(self, name: str) -> None:
        try:
            if not self._index.exists(name):
                return
            self._store.delete(name)
            logger.info("Deleted half-built image %s.", name)
        except TartError as exc:
            logger.warning(
                "Could not delete half-built image %s; run `tart delete %s`: %s",
                name, name, exc,
            )

    def _guest_script(self, session: VmSession, script: Path) -> str:
        """Path of the bootstrap inside the guest, uploading it if needed."""
        if session.mounted:
            try:
                rel = script.resolve().relative_to(Path(session.mounted_dir).resolve())
            except ValueError:
                rel = None
            if rel is not None:
                return f"{self._settings.guest_workspace}/{rel.as_posix()}"
        logger.info("Uploading %s to the guest.", script.name)
        session.put_files({script.name: script}, _UPLOAD_DIR)
        return f"{_UPLOAD_DIR}/{script.name}"

    def _run_bootstrap(self, session: VmSession, target: VersionTuple) -> None:
        script = self._guest_script(session, self.bootstrap_script)
        command = (
            f"export BUN_VERSION={shlex.quote(target.project_version)} && "
            f"bash {shlex.quote(script)}"
        )
        logger.info("Running bootstrap %s (bun %s).", script, target.project_version)
        result = session.exec(command, timeout=self._settings.bootstrap_timeout)
        if not result.ok:
            # Probing decides whether the image is usable.
            tail = "\n".join(result.stderr.strip().splitlines()[-20:])
            logger.warning("Bootstrap exited %d:\n%s", result.exit_code, tail)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        decision: BuildIncremental | BuildNew,
        target: VersionTuple,
        *,
        push: bool | None = None,
    ) -> str:
        """Build the image for *target* and return its local name.

        *push* overrides ``settings.push_images``; a failed push is logged only.
        """
        name = self._codec.encode(target)
        base = decision.base_image
        kind = "incremental" if isinstance(decision, BuildIncremental) else "full"
        logger.info("Starting %s build of %s from %s.", kind, name, base)

        if not self.bootstrap_script.is_file():
            raise ImageBuildError(
                f"Bootstrap script not found at {self.bootstrap_script}",
                step="bootstrap",
                remedy="set BUNCI_BOOTSTRAP_SCRIPT or BUNCI_WORKSPACE",
            )

        if self._index.exists(name):
            logger.info("Removing stale image %s.", name)
            try:
                self._store.delete(name)
            except TartError as exc:
                raise ImageBuildError(
                    f"Could not remove stale image {name}: {exc}",
                    step="delete_stale",
                    remedy=f"tart delete {name}",
                ) from exc

        session = VmSession(
            self._store,
            self._shell_factory,
            self._settings,
            name,
            clone_from=base,
            resources=VmResources(
                cpu=self._settings.vm_cpu, memory_mb=self._settings.vm_memory_mb
            ),
            shared_dir=Path(self._settings.workspace),
            ephemeral=False,
            allow_degraded_mount=True,
            sleep=self._sleep,
        )
        try:
            with session:
                session.wait_until_ready()
                self._run_bootstrap(session, target)
                result = self._validator.run_probes(session)
                if not result.passed:
                    raise ImageBuildError(
                        f"Built image is missing {', '.join(result.missing_tools)}",
                        step="validate",
                        remedy=f"inspect {self.bootstrap_script} and rerun with --force-refresh",
                    )
        except VmSessionError as exc:
            self._discard(name)
            raise ImageBuildError(
                f"Build of {name} failed: {exc.args[0]}",
                step=exc.step or "session",
                remedy=exc.remedy,
            ) from exc
        except BaseException:
            self._discard(name)
            raise

        logger.info("Built %s.", name)
        if self._settings.push_images if push is None else push:
            self._remote.push(name, target)
        return name
