"""SQLite-backed record store for VM instances and registry images."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional, Union

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    inspect,
    or_,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from openbsd_up.constants import SQLITE_BUSY_TIMEOUT
from openbsd_up.exceptions import NotFoundError, StoreError
from openbsd_up.models import VMStatus
from openbsd_up.utils import log, utcnow

Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


class VirtualMachine(Base):
    __tablename__ = "virtual_machines"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False, index=True)
    bridge = Column(String, nullable=True)
    mac_address = Column(String, nullable=False)
    memory = Column(String, nullable=False)
    cpus = Column(Integer, nullable=False)
    cpu = Column(String, nullable=False)
    disk_size = Column(String, nullable=False)
    disk_format = Column(String, nullable=False)
    port_forward = Column(String, nullable=True)
    iso_path = Column(String, nullable=True)
    drive_path = Column(String, nullable=True)
    version = Column(String, nullable=False)
    status = Column(String, nullable=False, default=VMStatus.STOPPED.value)
    pid = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    def __repr__(self):
        return f"<VirtualMachine(id='{self.id}', name='{self.name}', status='{self.status}', pid={self.pid})>"


class Image(Base):
    __tablename__ = "images"
    __table_args__ = (UniqueConstraint("repository", "tag", name="uq_images_repository_tag"),)

    id = Column(String, primary_key=True, default=new_id)
    repository = Column(String, nullable=False)
    tag = Column(String, nullable=False, default="latest")
    size = Column(Integer, nullable=False, default=0)
    path = Column(String, nullable=False)
    format = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    def to_dict(self) -> dict:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    def __repr__(self):
        return f"<Image(id='{self.id}', reference='{self.reference}')>"


# Columns added after the first released schema; applied by migrate() to older files.
_COLUMN_MIGRATIONS = {
    "virtual_machines": {
        "bridge": "VARCHAR",
        "port_forward": "VARCHAR",
        "drive_path": "VARCHAR",
        "disk_format": "VARCHAR NOT NULL DEFAULT 'raw'",
        "disk_size": "VARCHAR NOT NULL DEFAULT '20G'",
    },
}


def split_reference(reference: str):
    """Split ``repo[:tag]`` into ``(repo, tag)``; a port in the registry host is not a tag."""
    last_segment = reference.rsplit("/", 1)[-1]
    if ":" in last_segment:
        repository, tag = reference.rsplit(":", 1)
        return repository, tag
    return reference, "latest"


class RecordStore:
    """Durable table of VM records (and pulled images) in a single SQLite file."""

    def __init__(self, database: Union[str, Path]) -> None:
        if isinstance(database, Path) or "://" not in str(database):
            database_url = f"sqlite:///{database}"
        else:
            database_url = str(database)
        self.database_url = database_url
        self.engine = create_engine(
            database_url,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT} if database_url.startswith("sqlite") else {},
        )
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        self._migrated = False

    def migrate(self) -> None:
        """Bring the database to the latest schema. Safe to call repeatedly."""
        if self._migrated:
            return
        try:
            Base.metadata.create_all(bind=self.engine)
            inspector = inspect(self.engine)
            with self.engine.begin() as connection:
                for table, columns in _COLUMN_MIGRATIONS.items():
                    existing = {col["name"] for col in inspector.get_columns(table)}
                    for column, ddl in columns.items():
                        if column in existing:
                            continue
                        log("DEBUG", f"Migrating {table}: adding column {column}")
                        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to migrate state database: {exc}") from exc
        self._migrated = True

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Session with commit on success, rollback on error, and StoreError wrapping."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise StoreError(f"Constraint violation: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"State database error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        self.engine.dispose()

    # -- virtual machines -------------------------------------------------

    def insert(self, vm: VirtualMachine) -> VirtualMachine:
        now = utcnow()
        if vm.created_at is None:
            vm.created_at = now
        if vm.updated_at is None:
            vm.updated_at = now
        with self.session() as session:
            session.add(vm)
        return vm

    @staticmethod
    def _lookup(session: Session, key: str) -> Optional[VirtualMachine]:
        vm = session.get(VirtualMachine, key)
        if vm is not None:
            return vm
        return (
            session.query(VirtualMachine)
            .filter(VirtualMachine.name == key)
            .order_by(VirtualMachine.created_at.asc(), VirtualMachine.id.asc())
            .first()
        )

    def find_by_name_or_id(self, key: str) -> Optional[VirtualMachine]:
        with self.session() as session:
            return self._lookup(session, key)

    def update_status(self, key: str, status: VMStatus, pid: Optional[int] = None) -> VirtualMachine:
        with self.session() as session:
            vm = self._lookup(session, key)
            if vm is None:
                raise StoreError(f"Cannot update status: no record for '{key}'")
            vm.status = VMStatus(status).value
            if pid is not None:
                vm.pid = pid
            vm.updated_at = utcnow()
        return vm

    def list(self, all: bool = False) -> List[VirtualMachine]:
        with self.session() as session:
            query = session.query(VirtualMachine)
            if not all:
                query = query.filter(VirtualMachine.status == VMStatus.RUNNING.value)
            return query.order_by(VirtualMachine.created_at.asc(), VirtualMachine.id.asc()).all()

    def delete(self, key: str) -> VirtualMachine:
        with self.session() as session:
            vm = self._lookup(session, key)
            if vm is None:
                raise NotFoundError(f"Virtual machine with name or ID {key} not found.")
            session.delete(vm)
        return vm

    # -- images -----------------------------------------------------------

    def save_image(self, repository: str, tag: str, path: str, format: str, size: int) -> Image:
        with self.session() as session:
            image = (
                session.query(Image)
                .filter(Image.repository == repository, Image.tag == tag)
                .first()
            )
            if image is None:
                image = Image(
                    id=new_id(),
                    repository=repository,
                    tag=tag,
                    path=path,
                    format=format,
                    size=size,
                    created_at=utcnow(),
                )
                session.add(image)
            else:
                image.path = path
                image.format = format
                image.size = size
        return image

    def find_image(self, key: str) -> Optional[Image]:
        repository, tag = split_reference(key)
        with self.session() as session:
            return (
                session.query(Image)
                .filter(
                    or_(
                        Image.id == key,
                        (Image.repository == repository) & (Image.tag == tag),
                    )
                )
                .first()
            )

    def list_images(self) -> List[Image]:
        with self.session() as session:
            return session.query(Image).order_by(Image.created_at.asc()).all()

    def delete_image(self, key: str) -> Image:
        image = self.find_image(key)
        if image is None:
            raise NotFoundError(f"Image {key} not found.")
        with self.session() as session:
            session.query(Image).filter(Image.id == image.id).delete()
        return image
