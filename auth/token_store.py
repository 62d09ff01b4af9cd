from __future__ import annotations

import base64
import binascii
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path


class TokenStore(ABC):
    """Durable key-value persistence for serialized token caches."""

    @abstractmethod
    async def read(self, key: str) -> bytes | None:
        raise NotImplementedError

    @abstractmethod
    async def write(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def read(self, key: str) -> bytes | None:
        return self._blobs.get(key)

    async def write(self, key: str, data: bytes) -> None:
        self._blobs[key] = bytes(data)

    async def delete(self, key: str) -> None:
        self._blobs.pop(key, None)


class FileTokenStore(TokenStore):
    def __init__(self, path: str | Path = ".onedrive_tokens.json") -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    async def read(self, key: str) -> bytes | None:
        encoded = self._read_all().get(key)
        if encoded is None:
            return None
        try:
            return base64.b64decode(encoded.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as error:
            raise RuntimeError(f"Token store entry {key!r} is not valid base64.") from error

    async def write(self, key: str, data: bytes) -> None:
        all_blobs = self._read_all()
        all_blobs[key] = base64.b64encode(data).decode("ascii")
        self._write_all(all_blobs)

    async def delete(self, key: str) -> None:
        if not self._path.exists():
            return
        all_blobs = self._read_all()
        if all_blobs.pop(key, None) is None:
            return
        self._write_all(all_blobs)

    def _read_all(self) -> dict[str, str]:
        if not self._path.exists():
            return {}

        try:
            text = self._path.read_text(encoding="utf-8")
        except UnicodeDecodeError as error:
            raise RuntimeError("Token store file is invalid; expected JSON.") from error
        except OSError as error:
            raise RuntimeError(f"Token store file is unreadable: {error}") from error

        try:
            raw = json.loads(text)
        except ValueError as error:
            raise RuntimeError("Token store file is invalid; expected JSON.") from error
        if not isinstance(raw, dict) or not all(isinstance(v, str) for v in raw.values()):
            raise RuntimeError("Token store file is invalid; expected top-level JSON object.")
        return raw

    def _write_all(self, payload: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
