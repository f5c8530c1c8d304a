"""Per-invocation context: state directories, record store and host description."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from openbsd_up.constants import (
    DB_FILENAME,
    DEFAULT_HOME_DIR,
    FIRMWARE_DIRNAME,
    HOME_DIR_ENV,
    IMAGES_DIRNAME,
    LOGS_DIRNAME,
)
from openbsd_up.host import HostInfo, detect_host
from openbsd_up.store import RecordStore
from openbsd_up.utils import ensure_directory, get_env


@dataclass
class Context:
    home_dir: Path
    store: RecordStore
    host: HostInfo

    @property
    def db_path(self) -> Path:
        return self.home_dir / DB_FILENAME

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / LOGS_DIRNAME

    @property
    def images_dir(self) -> Path:
        return self.home_dir / IMAGES_DIRNAME

    @property
    def firmware_dir(self) -> Path:
        return self.home_dir / FIRMWARE_DIRNAME

    def log_path(self, vm_name: str) -> Path:
        return self.logs_dir / f"{vm_name}.log"

    def close(self) -> None:
        self.store.close()


def resolve_home_dir(home_dir: Optional[Path] = None) -> Path:
    if home_dir is not None:
        return Path(home_dir)
    override = get_env(HOME_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return DEFAULT_HOME_DIR


def create_context(home_dir: Optional[Path] = None, host: Optional[HostInfo] = None) -> Context:
    """Build the context once per process: create directories and migrate the store."""
    home = resolve_home_dir(home_dir)
    ensure_directory(home)
    store = RecordStore(home / DB_FILENAME)
    store.migrate()
    return Context(home_dir=home, store=store, host=host or detect_host())
