import base64
import fcntl
import os
import pathlib
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Self, override

from pydantic import BaseModel

from lockward.server.lock_base import utcnow
from lockward.server.store_base import (
    InvalidKey,
    ObjectNotFound,
    ObjectStoreProtocol,
    PreconditionFailed,
    StoredObject,
)

GUARD_FILE_NAME = ".lockward-guard"


class LocalObjectStoreInitConfig(BaseModel):
    """Initialization params required to initialize the local object store.

    Attributes:
        folder: The folder that holds the objects - may be a shared mount.
        folder_mode: Permissions of created folders.
        file_mode: Permissions of created objects.
    """

    folder: pathlib.Path
    folder_mode: int = 0o700
    file_mode: int = 0o600


class ObjectEnvelope(BaseModel):
    token: str
    created_at: datetime
    body: str

    def to_stored_object(self) -> StoredObject:
        return StoredObject(body=base64.b64decode(self.body), token=self.token, created_at=self.created_at)


class LocalObjectStore(ObjectStoreProtocol):
    """Object store on a local (or shared) folder.

    New objects are published with a hard link, which fails atomically if the target exists.
    Every other mutation runs under an exclusive `flock` on a guard file in the folder.
    """

    def __init__(self, folder: pathlib.Path, folder_mode: int, file_mode: int) -> None:
        self.folder = folder.expanduser()
        self.folder_mode = folder_mode
        self.file_mode = file_mode

        if not self.folder.exists():
            self.folder.mkdir(parents=True, exist_ok=True)
            self.folder.chmod(self.folder_mode)

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = LocalObjectStoreInitConfig.model_validate(raw_config)
        return cls(
            **result.model_dump(),
        )

    def _path(self, key: str) -> pathlib.Path:
        # keys map to files one to one - parts the filesystem would fold are rejected
        parts = key.split("/")
        if any(part in ("", ".", "..") for part in parts) or parts[0] == GUARD_FILE_NAME:
            raise InvalidKey(f"Key {key} is not a canonical relative path")

        path = self.folder / key
        if not path.resolve().is_relative_to(self.folder.resolve()):
            raise InvalidKey(f"Key {key} points outside of {self.folder}")

        return path

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with open(self.folder / GUARD_FILE_NAME, "a") as guard:
            fcntl.flock(guard, fcntl.LOCK_EX)
            try:
                yield

            finally:
                fcntl.flock(guard, fcntl.LOCK_UN)

    def _read(self, path: pathlib.Path, key: str) -> ObjectEnvelope:
        try:
            return ObjectEnvelope.model_validate_json(path.read_bytes())

        except FileNotFoundError as exc:
            raise ObjectNotFound(f"Object {key} not found") from exc

    def _write_temp(self, path: pathlib.Path, body: bytes) -> tuple[pathlib.Path, str]:
        path.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        envelope = ObjectEnvelope(token=token, created_at=utcnow(), body=base64.b64encode(body).decode())
        temp_file = path.parent / f".{path.name}.{token}.tmp"
        temp_file.write_bytes(envelope.model_dump_json().encode())
        temp_file.chmod(self.file_mode)
        return temp_file, token

    @override
    async def conditional_put(
        self,
        key: str,
        body: bytes,
        *,
        fail_if_exists: bool = True,
        expected_token: str | None = None,
    ) -> str:
        path = self._path(key)
        temp_file, token = self._write_temp(path, body)
        try:
            with self._guard():
                if expected_token is not None:
                    try:
                        current = self._read(path, key)

                    except ObjectNotFound as exc:
                        raise PreconditionFailed(f"Object {key} does not exist") from exc

                    if current.token != expected_token:
                        raise PreconditionFailed(f"Object {key} does not match token {expected_token}")

                if fail_if_exists:
                    try:
                        os.link(temp_file, path)

                    except FileExistsError as exc:
                        raise PreconditionFailed(f"Object {key} already exists") from exc

                else:
                    os.replace(temp_file, path)

        finally:
            temp_file.unlink(missing_ok=True)

        return token

    @override
    async def conditional_delete(self, key: str, token: str) -> None:
        path = self._path(key)
        with self._guard():
            current = self._read(path, key)
            if current.token != token:
                raise PreconditionFailed(f"Object {key} does not match token {token}")

            path.unlink()

    @override
    async def get(self, key: str) -> StoredObject:
        return self._read(self._path(key), key).to_stored_object()

    @override
    async def delete(self, key: str) -> None:
        path = self._path(key)
        with self._guard():
            try:
                path.unlink()

            except FileNotFoundError as exc:
                raise ObjectNotFound(f"Object {key} not found") from exc
