"""OCI registry push/pull of VM disk images via the ``oras`` CLI."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import List, Optional

from openbsd_up.constants import DISK_FORMATS, ORAS_ARTIFACT_TYPE, ORAS_DEFAULT_VERSION
from openbsd_up.context import Context
from openbsd_up.exceptions import CommandError, ManagerError
from openbsd_up.store import Image, VirtualMachine, split_reference
from openbsd_up.utils import ensure_directory, get_env, log, run

_LAYER_MEDIA_TYPE = "application/vnd.openbsd-up.disk.layer.v1.{format}"


def detect_disk_format(path: Path) -> str:
    suffix = path.suffix.lower().lstrip(".")
    if suffix in DISK_FORMATS:
        return suffix
    return "raw"


def safe_dirname(reference: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", reference)


class OrasClient:
    """Thin wrapper around the ``oras`` binary; every failure surfaces as CommandError."""

    def __init__(self, ctx: Context, binary: str = "oras") -> None:
        self.ctx = ctx
        self.binary = binary

    def ensure_available(self) -> str:
        if shutil.which(self.binary) is None:
            version = get_env("ORAS_VERSION", ORAS_DEFAULT_VERSION)
            raise CommandError(
                f"{self.binary} is not installed. Install ORAS {version} "
                "(https://oras.land/docs/installation) to use registry commands.",
                exit_code=127,
            )
        result = run([self.binary, "version"], capture_output=True)
        return result.stdout.strip()

    def login(self, registry: str, username: str, password: Optional[str] = None) -> None:
        self.ensure_available()
        cmd = [self.binary, "login", registry, "--username", username, "--password-stdin"]
        run(cmd, input=password or "", capture_output=True)
        log("SUCCESS", f"Logged in to {registry}")

    def pull(self, reference: str) -> Image:
        """Pull ``reference`` into the images directory and record it."""
        self.ensure_available()
        repository, tag = split_reference(reference)
        target = self.ctx.images_dir / safe_dirname(f"{repository}_{tag}")
        ensure_directory(target)
        log("INFO", f"Pulling image {repository}:{tag}...")
        run([self.binary, "pull", f"{repository}:{tag}", "--output", str(target)])

        disk = self._find_disk(target)
        if disk is None:
            raise CommandError(f"Pulled artifact {repository}:{tag} contains no disk image")
        image = self.ctx.store.save_image(
            repository=repository,
            tag=tag,
            path=str(disk.resolve()),
            format=detect_disk_format(disk),
            size=disk.stat().st_size,
        )
        log("SUCCESS", f"Pulled {image.reference} to {image.path}")
        return image

    def push(self, vm: VirtualMachine, reference: str) -> Image:
        """Push the drive of ``vm`` as an OCI artifact and record it locally."""
        if not vm.drive_path:
            raise ManagerError(f"Virtual machine {vm.name} has no drive image to push")
        drive = Path(vm.drive_path)
        if not drive.exists():
            raise ManagerError(f"Drive image {drive} does not exist")
        self.ensure_available()
        repository, tag = split_reference(reference)
        layer = f"{drive.name}:{_LAYER_MEDIA_TYPE.format(format=vm.disk_format)}"
        log("INFO", f"Pushing {drive} to {repository}:{tag}...")
        run(
            [
                self.binary,
                "push",
                f"{repository}:{tag}",
                "--artifact-type",
                ORAS_ARTIFACT_TYPE,
                layer,
            ],
            cwd=str(drive.parent),
        )
        image = self.ctx.store.save_image(
            repository=repository,
            tag=tag,
            path=str(drive),
            format=vm.disk_format,
            size=drive.stat().st_size,
        )
        log("SUCCESS", f"Pushed {image.reference}")
        return image

    def get_or_pull(self, reference: str) -> Image:
        image = self.ctx.store.find_image(reference)
        if image is not None:
            return image
        log("INFO", f"Image {reference} not found locally")
        return self.pull(reference)

    @staticmethod
    def _find_disk(directory: Path) -> Optional[Path]:
        candidates: List[Path] = [p for p in directory.rglob("*") if p.is_file()]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.stat().st_size)
