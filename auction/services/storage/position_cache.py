"""Персистентный кеш позиций поверх key/value хранилища.

Все владельцы лежат в одном контейнере `{version, data: {owner: entry}}`
под ключом `pva_positions_v2`. Запись содержит заголовок (timestamp,
version, owner, encoding, position_count, size) и либо открытый список
позиций, либо закодированную строку `payload`.

Любая порча данных лечится удалением: битый контейнер стирается целиком,
битая или чужая запись стирается точечно. Наружу кеш ошибок не отдаёт,
промах всегда выглядит как None.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable

from loguru import logger

from auction.exceptions import CacheCorruptedError, CacheError, CacheVersionMismatchError
from auction.models import Clock, Position, now_ts, position_from_dict, position_to_dict
from auction.services.storage.backends import KeyValueStore
from auction.services.storage.codec import AesGcmCodec, Codec, ZlibCodec
from auction.utils.validation import validate_and_filter_positions
from config.settings import CacheSettings, get_settings

CONTAINER_KEY = "pva_positions_v2"
CONTAINER_VERSION = "2.0.0"
LEGACY_CONTAINER_KEY = "pva_positions_cache"

_DEFAULT_CODEC: Any = object()


def _major(version: Any) -> str:
    return str(version).split(".")[0]


class PersistentPositionCache:
    def __init__(
        self,
        storage: KeyValueStore,
        settings: CacheSettings | None = None,
        compression: Codec | None = _DEFAULT_CODEC,
        encryption: Codec | None = _DEFAULT_CODEC,
        clock: Clock = now_ts,
    ) -> None:
        cfg = settings or get_settings().cache
        self.storage = storage
        self.ttl = cfg.ttl_seconds
        self.cleanup_age = cfg.cleanup_age_seconds
        self.compression_threshold = cfg.compression_threshold
        self.encryption_min_positions = cfg.encryption_min_positions
        # None отключает кодек.
        self.compression = ZlibCodec() if compression is _DEFAULT_CODEC else compression
        self.encryption = (
            AesGcmCodec(cfg.kdf_iterations) if encryption is _DEFAULT_CODEC else encryption
        )
        self._clock = clock
        self._lock = asyncio.Lock()
        self.encryption_failures = 0

    # ------------------------------------------------------------------
    # контейнер

    async def _read_container(self) -> dict[str, Any]:
        raw = await self.storage.get(CONTAINER_KEY)
        if raw is None:
            return {}
        try:
            container = json.loads(raw)
            if not isinstance(container, dict) or not isinstance(container.get("data"), dict):
                raise CacheCorruptedError("Контейнер кеша без поля data")
            if container.get("version") != CONTAINER_VERSION:
                raise CacheVersionMismatchError(
                    f"Версия контейнера {container.get('version')!r} != {CONTAINER_VERSION}"
                )
        except (ValueError, CacheError) as exc:
            logger.warning("Контейнер кеша сброшен целиком: {error}", error=exc)
            await self.storage.delete(CONTAINER_KEY)
            return {}
        return container["data"]

    async def _write_container(self, data: dict[str, Any]) -> None:
        if not data:
            await self.storage.delete(CONTAINER_KEY)
            return
        payload = json.dumps({"version": CONTAINER_VERSION, "data": data}, separators=(",", ":"))
        await self.storage.set(CONTAINER_KEY, payload)

    # ------------------------------------------------------------------
    # основные операции

    async def save(self, owner: str, positions: Iterable[Position]) -> bool:
        """Сохраняет снимок позиций владельца. False, если записать не вышло."""

        items = list(positions)
        try:
            entry = await self._build_entry(owner, items)
            async with self._lock:
                data = await self._read_container()
                data[owner.lower()] = entry
                await self._write_container(data)
        except Exception as exc:  # noqa: BLE001
            logger.error("Не удалось сохранить кеш для {owner}: {error}", owner=owner, error=exc)
            return False
        logger.debug(
            "Закешировано {count} позиций для {owner} (encoding={encoding})",
            count=len(items),
            owner=owner,
            encoding=entry["encoding"],
        )
        return True

    async def _build_entry(self, owner: str, positions: list[Position]) -> dict[str, Any]:
        serialized = json.dumps([position_to_dict(item) for item in positions], separators=(",", ":"))
        encoding: list[str] = []
        payload = serialized

        if self.compression is not None and len(payload) > self.compression_threshold:
            compressed = await self.compression.encode(payload, owner)
            if len(compressed) < len(payload):
                payload = compressed
                encoding.append(self.compression.name)

        if self.encryption is not None and len(positions) >= self.encryption_min_positions:
            try:
                payload = await self.encryption.encode(payload, owner)
                encoding.append(self.encryption.name)
            except Exception as exc:  # noqa: BLE001
                self.encryption_failures += 1
                logger.warning(
                    "Шифрование кеша для {owner} не удалось, пишем без него: {error}",
                    owner=owner,
                    error=exc,
                )

        entry: dict[str, Any] = {
            "timestamp": self._clock(),
            "version": CONTAINER_VERSION,
            "owner": owner.lower(),
            "encoding": encoding,
            "position_count": len(positions),
            "size": len(payload),
        }
        if encoding:
            entry["payload"] = payload
        else:
            entry["positions"] = json.loads(serialized)
        return entry

    async def load(self, owner: str) -> list[Position] | None:
        """Валидные позиции из кеша или None (нет, протухло, битое)."""

        try:
            return await self._load(owner)
        except Exception as exc:  # noqa: BLE001
            logger.error("Чтение кеша {owner} упало: {error}", owner=owner, error=exc)
            return None

    async def _load(self, owner: str) -> list[Position] | None:
        key = owner.lower()
        async with self._lock:
            data = await self._read_container()
            entry = data.get(key)
            if entry is None:
                return None
            now = self._clock()
            try:
                self._check_header(entry, key)
                if now - float(entry["timestamp"]) > self.ttl:
                    logger.debug("Кеш {owner} протух, удаляем", owner=owner)
                    del data[key]
                    await self._write_container(data)
                    return None
                raw_positions = await self._decode_positions(entry, owner)
            except CacheError as exc:
                logger.warning("Запись кеша {owner} сброшена: {error}", owner=owner, error=exc)
                del data[key]
                await self._write_container(data)
                return None

        if raw_positions is None:
            return None
        positions: list[Position] = []
        for raw in raw_positions:
            try:
                positions.append(position_from_dict(raw).with_fresh_status(now))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Пропущена битая позиция в кеше {owner}: {error}", owner=owner, error=exc)
        valid = validate_and_filter_positions(positions, owner, now)
        logger.debug("Из кеша загружено {count} позиций для {owner}", count=len(valid), owner=owner)
        return valid

    def _check_header(self, entry: Any, key: str) -> None:
        if not isinstance(entry, dict) or not isinstance(entry.get("timestamp"), (int, float)):
            raise CacheCorruptedError("Запись без заголовка")
        if _major(entry.get("version")) != _major(CONTAINER_VERSION):
            raise CacheVersionMismatchError(f"Версия записи {entry.get('version')!r}")
        if str(entry.get("owner", "")).lower() != key:
            raise CacheCorruptedError("Владелец записи не совпадает с ключом")

    async def _decode_positions(self, entry: dict[str, Any], owner: str) -> list[Any] | None:
        encoding = entry.get("encoding") or []
        if not encoding:
            positions = entry.get("positions")
            if not isinstance(positions, list):
                raise CacheCorruptedError("В записи нет списка позиций")
            return positions

        codecs = {codec.name: codec for codec in (self.compression, self.encryption) if codec is not None}
        payload = entry.get("payload")
        if not isinstance(payload, str):
            raise CacheCorruptedError("В записи нет payload")
        for name in reversed(encoding):
            codec = codecs.get(name)
            if codec is None:
                raise CacheCorruptedError(f"Кодек {name!r} недоступен")
            decoded = await codec.decode(payload, owner)
            if decoded is None:
                # Конверт новее, чем мы умеем читать.
                return None
            payload = decoded
        try:
            positions = json.loads(payload)
        except ValueError as exc:
            raise CacheCorruptedError(f"Не JSON после декодирования: {exc}") from exc
        if not isinstance(positions, list):
            raise CacheCorruptedError("После декодирования ожидался список")
        return positions

    async def clear(self, owner: str) -> None:
        async with self._lock:
            data = await self._read_container()
            if data.pop(owner.lower(), None) is not None:
                await self._write_container(data)
                logger.debug("Кеш {owner} очищен", owner=owner)

    async def is_valid(self, owner: str) -> bool:
        """Есть ли пригодная к загрузке запись (без декодирования тела)."""

        async with self._lock:
            data = await self._read_container()
        entry = data.get(owner.lower())
        try:
            self._check_header(entry, owner.lower())
        except CacheError:
            return False
        return self._clock() - float(entry["timestamp"]) <= self.ttl

    async def cleanup_old_data(self) -> int:
        """Удаляет записи старше cleanup_age и записи с нечитаемым заголовком."""

        async with self._lock:
            data = await self._read_container()
            now = self._clock()
            stale = []
            for key, entry in data.items():
                try:
                    if now - float(entry["timestamp"]) > self.cleanup_age:
                        stale.append(key)
                except (KeyError, TypeError, ValueError):
                    stale.append(key)
            for key in stale:
                del data[key]
            if stale:
                await self._write_container(data)
                logger.info("Очистка кеша: удалено {count} старых записей", count=len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # обслуживание

    async def clear_all(self) -> None:
        async with self._lock:
            await self.storage.delete(CONTAINER_KEY)
            await self.storage.delete(LEGACY_CONTAINER_KEY)
        logger.info("Весь кеш позиций очищен")

    async def get_last_update_time(self, owner: str) -> float | None:
        metadata = await self.get_metadata(owner)
        return None if metadata is None else metadata["last_update"]

    async def get_metadata(self, owner: str) -> dict[str, Any] | None:
        """Заголовок записи, даже протухшей (тогда `expired=True`)."""

        async with self._lock:
            data = await self._read_container()
        entry = data.get(owner.lower())
        try:
            self._check_header(entry, owner.lower())
            timestamp = float(entry["timestamp"])
        except (CacheError, TypeError, ValueError):
            return None
        encoding = entry.get("encoding") or []
        return {
            "last_update": timestamp,
            "position_count": entry.get("position_count", 0),
            "version": entry.get("version"),
            "size": entry.get("size", 0),
            "compressed": self.compression is not None and self.compression.name in encoding,
            "encrypted": self.encryption is not None and self.encryption.name in encoding,
            "expired": self._clock() - timestamp > self.ttl,
        }

    async def get_stats(self) -> dict[str, Any]:
        async with self._lock:
            data = await self._read_container()
        total_size = 0
        compressed = 0
        encrypted = 0
        oldest: float | None = None
        for entry in data.values():
            if not isinstance(entry, dict):
                continue
            encoding = entry.get("encoding") or []
            total_size += int(entry.get("size", 0))
            if ZlibCodec.name in encoding:
                compressed += 1
            if AesGcmCodec.name in encoding:
                encrypted += 1
            timestamp = entry.get("timestamp")
            if isinstance(timestamp, (int, float)) and (oldest is None or timestamp < oldest):
                oldest = float(timestamp)
        return {
            "total_users": len(data),
            "total_size": total_size,
            "compressed_entries": compressed,
            "encrypted_entries": encrypted,
            "oldest_entry": oldest,
            "encryption_failures": self.encryption_failures,
        }

    async def export_user_cache(self, owner: str) -> str | None:
        positions = await self.load(owner)
        if positions is None:
            return None
        export = {
            "owner": owner.lower(),
            "positions": [position_to_dict(item) for item in positions],
            "metadata": await self.get_metadata(owner),
            "exported_at": self._clock(),
            "version": CONTAINER_VERSION,
        }
        return json.dumps(export, indent=2)

    async def import_user_cache(self, owner: str, data: str) -> int:
        """Импортирует бэкап из export_user_cache. Бросает CacheError на мусоре."""

        try:
            payload = json.loads(data)
            positions = [position_from_dict(item) for item in payload["positions"]]
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheError(f"Не удалось импортировать кеш: {exc}") from exc
        if not await self.save(owner, positions):
            raise CacheError("Не удалось сохранить импортированный кеш")
        logger.info("Импортировано {count} позиций для {owner}", count=len(positions), owner=owner)
        return len(positions)

    async def migrate_from_v1(self) -> int:
        """Переносит записи старого контейнера `pva_positions_cache` в текущий формат."""

        raw = await self.storage.get(LEGACY_CONTAINER_KEY)
        if raw is None:
            return 0
        migrated = 0
        try:
            legacy = json.loads(raw)
            entries = legacy.get("data") or {}
            for owner, entry in entries.items():
                raw_positions = entry.get("positions") if isinstance(entry, dict) else None
                if not raw_positions:
                    continue
                positions = []
                for item in raw_positions:
                    try:
                        positions.append(position_from_dict(item))
                    except (KeyError, TypeError, ValueError):
                        continue
                if await self.save(owner, positions):
                    migrated += 1
        except (ValueError, AttributeError) as exc:
            logger.error("Миграция кеша v1 не удалась: {error}", error=exc)
        await self.storage.delete(LEGACY_CONTAINER_KEY)
        if migrated:
            logger.info("Мигрировано {count} записей кеша v1 -> v2", count=migrated)
        return migrated


__all__ = ["CONTAINER_KEY", "CONTAINER_VERSION", "LEGACY_CONTAINER_KEY", "PersistentPositionCache"]
