"""Where a journal lives between sessions.

Every backend stores two blobs: the position list (as the codec's JSON array)
and a free-form settings object. Saving is best-effort: failures are logged
and reported through SaveResult so the in-memory journal keeps working.
Loading raises StoreError so the caller can decide to warn and start empty.
"""

from __future__ import annotations

import asyncio
import os
import pathlib
import sqlite3
import tempfile
from dataclasses import dataclass, field
from typing import Any, Final

import aiohttp
import diskcache  # type: ignore
import orjson
from loguru import logger

from . import codec
from .ledger import Position

POSITIONS_KEY: Final = "trading_journal_positions"
SETTINGS_KEY: Final = "trading_journal_settings"


class StoreError(Exception):
    """Stored journal data couldn't be read."""


@dataclass(slots=True, frozen=True)
class SaveResult:
    ok: bool
    error: str | None = None


class Store:
    """Base interface for journal persistence.

    Subclasses implement the four async methods. 'load()' returns [] (and
    'load_settings()' returns {}) when nothing was ever saved."""

    async def load(self) -> list[Position]:
        raise NotImplementedError

    async def save(self, positions: list[Position]) -> SaveResult:
        raise NotImplementedError

    async def load_settings(self) -> dict[str, Any]:
        raise NotImplementedError

    async def save_settings(self, settings: dict[str, Any]) -> SaveResult:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    @staticmethod
    def decode(found: bytes | str) -> list[Position]:
        try:
            return codec.loads(found)
        except codec.CodecError as e:
            raise StoreError(f"Stored positions are unreadable: {e}")

    @staticmethod
    def decode_settings(found: bytes | str) -> dict[str, Any]:
        try:
            return codec.loads_settings(found)
        except codec.CodecError as e:
            raise StoreError(f"Stored settings are unreadable: {e}")


@dataclass
class MemoryStore(Store):
    """Keeps encoded blobs in a dict. Useful for tests and throwaway sessions.

    Blobs are stored encoded so loading always returns fresh objects."""

    blobs: dict[str, bytes] = field(default_factory=dict)

    async def load(self) -> list[Position]:
        if (found := self.blobs.get(POSITIONS_KEY)) is None:
            return []

        return self.decode(found)

    async def save(self, positions: list[Position]) -> SaveResult:
        self.blobs[POSITIONS_KEY] = codec.dumps(positions)
        return SaveResult(True)

    async def load_settings(self) -> dict[str, Any]:
        if (found := self.blobs.get(SETTINGS_KEY)) is None:
            return {}

        return self.decode_settings(found)

    async def save_settings(self, settings: dict[str, Any]) -> SaveResult:
        self.blobs[SETTINGS_KEY] = codec.dumps_settings(settings)
        return SaveResult(True)


@dataclass
class FileStore(Store):
    """Positions in one JSON document on disk, settings in a sibling file.

    Writes go to a temporary file in the same directory which then replaces
    the target, so a crash mid-write never leaves a truncated journal."""

    path: pathlib.Path

    def __post_init__(self):
        self.path = pathlib.Path(self.path)

    @property
    def settings_path(self) -> pathlib.Path:
        return self.path.with_name(f"{self.path.stem}.settings.json")

    def _read(self, where: pathlib.Path) -> bytes | None:
        try:
            return where.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Failed to read {where}: {e}")

    def _write(self, where: pathlib.Path, data: bytes) -> SaveResult:
        try:
            where.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=where.parent, prefix=f".{where.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)

                os.replace(tmp, where)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as e:
            logger.error("Failed to save {}: {}", where, e)
            return SaveResult(False, str(e))

        return SaveResult(True)

    async def load(self) -> list[Position]:
        if (found := await asyncio.to_thread(self._read, self.path)) is None:
            return []

        return self.decode(found)

    async def save(self, positions: list[Position]) -> SaveResult:
        return await asyncio.to_thread(self._write, self.path, codec.dumps(positions))

    async def load_settings(self) -> dict[str, Any]:
        if (found := await asyncio.to_thread(self._read, self.settings_path)) is None:
            return {}

        return self.decode_settings(found)

    async def save_settings(self, settings: dict[str, Any]) -> SaveResult:
        return await asyncio.to_thread(
            self._write, self.settings_path, codec.dumps_settings(settings)
        )


@dataclass
class DiskStore(Store):
    """Local key/value persistence backed by a diskcache directory."""

    directory: str
    cache: diskcache.Cache = field(init=False)

    def __post_init__(self):
        self.cache = diskcache.Cache(self.directory)

    def _get(self, key: str) -> bytes | None:
        try:
            return self.cache.get(key)
        except (OSError, sqlite3.Error, diskcache.Timeout) as e:
            raise StoreError(f"Failed to read {key} from {self.directory}: {e}")

    def _set(self, key: str, data: bytes) -> SaveResult:
        try:
            self.cache.set(key, data)
        except (OSError, sqlite3.Error, diskcache.Timeout) as e:
            logger.error("Failed to save {} to {}: {}", key, self.directory, e)
            return SaveResult(False, str(e))

        return SaveResult(True)

    async def load(self) -> list[Position]:
        if (found := await asyncio.to_thread(self._get, POSITIONS_KEY)) is None:
            return []

        return self.decode(found)

    async def save(self, positions: list[Position]) -> SaveResult:
        return await asyncio.to_thread(self._set, POSITIONS_KEY, codec.dumps(positions))

    async def load_settings(self) -> dict[str, Any]:
        if (found := await asyncio.to_thread(self._get, SETTINGS_KEY)) is None:
            return {}

        return self.decode_settings(found)

    async def save_settings(self, settings: dict[str, Any]) -> SaveResult:
        return await asyncio.to_thread(
            self._set, SETTINGS_KEY, codec.dumps_settings(settings)
        )

    def destroy(self) -> None:
        """Remove every stored key and close the cache."""
        self.cache.clear()
        self.cache.close()

    async def close(self) -> None:
        self.cache.close()


@dataclass
class RemoteKVStore(Store):
    """Key/value service speaking the Redis-over-REST protocol.

    GET {url}/get/{key} returns {"result": <string or null>}, and
    POST {url}/set/{key} stores the request body. Every request carries a
    bearer token."""

    url: str
    token: str
    session: aiohttp.ClientSession | None = None
    timeout: float = 15.0

    def __post_init__(self):
        self.url = self.url.rstrip("/")

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def setup(self) -> aiohttp.ClientSession:
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

        return self.session

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    async def _get(self, key: str) -> str | None:
        session = await self.setup()
        try:
            async with session.get(
                f"{self.url}/get/{key}", headers=self.headers
            ) as got:
                if got.status != 200:
                    raise StoreError(f"Reading {key} failed with HTTP {got.status}")

                found = orjson.loads(await got.read())
        except (aiohttp.ClientError, asyncio.TimeoutError, orjson.JSONDecodeError) as e:
            raise StoreError(f"Reading {key} failed: {e}")

        if not isinstance(found, dict):
            raise StoreError(f"Reading {key} returned {type(found).__name__}")

        return found.get("result")

    async def _set(self, key: str, data: bytes) -> SaveResult:
        session = await self.setup()
        try:
            async with session.post(
                f"{self.url}/set/{key}", headers=self.headers, data=data
            ) as got:
                if got.status != 200:
                    logger.error("Saving {} failed with HTTP {}", key, got.status)
                    return SaveResult(False, f"HTTP {got.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Saving {} failed: {}", key, e)
            return SaveResult(False, str(e))

        return SaveResult(True)

    async def load(self) -> list[Position]:
        if (found := await self._get(POSITIONS_KEY)) is None:
            return []

        return self.decode(found)

    async def save(self, positions: list[Position]) -> SaveResult:
        return await self._set(POSITIONS_KEY, codec.dumps(positions))

    async def load_settings(self) -> dict[str, Any]:
        if (found := await self._get(SETTINGS_KEY)) is None:
            return {}

        return self.decode_settings(found)

    async def save_settings(self, settings: dict[str, Any]) -> SaveResult:
        return await self._set(SETTINGS_KEY, codec.dumps_settings(settings))
