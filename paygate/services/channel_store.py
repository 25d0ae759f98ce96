"""
支付通道配置存储：channels 表的读写。

通道凭证以 JSON 序列化后用 Fernet 加密存储，密钥由 CONFIG_SECRET 通过 PBKDF2 派生。
解密后的配置按通道缓存，保存时失效。
"""

import base64
import json
import logging
import os
import threading
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from paygate.database import get_db
from paygate.models.schemas import ChannelConfig
from paygate.plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class ChannelStoreError(Exception):
    """通道不存在、已停用或配置无法解密。"""
    pass


def _get_fernet() -> Fernet:
    """从 CONFIG_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("CONFIG_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"paygate-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


class ChannelStore:
    """通道配置服务：保存、读取、停用。"""

    def __init__(self, registry: PluginRegistry):
        self.registry = registry
        self._cache: dict[int, tuple[str, ChannelConfig]] = {}
        self._lock = threading.Lock()

    def save_channel(self, plugin: str, name: str, config: dict,
                     channel_id: int | None = None, active: bool = True) -> int:
        """
        新建或更新通道，按插件声明的输入项校验配置。

        Returns:
            通道 ID。

        Raises:
            ValueError: 插件不存在、缺少必填配置或通道不存在。
        """
        instance = self.registry.resolve(plugin)
        if instance is None:
            raise ValueError(f"支付插件 '{plugin}' 不存在")
        missing = instance.validate_config(config)
        if missing:
            raise ValueError(f"缺少必填配置: {', '.join(missing)}")

        ciphertext = _encrypt(json.dumps(config, ensure_ascii=False))
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            if channel_id is None:
                cursor = db.execute(
                    """INSERT INTO channels (plugin, name, config, active, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (plugin, name, ciphertext, 1 if active else 0, now, now),
                )
                channel_id = cursor.lastrowid
            else:
                cursor = db.execute(
                    """UPDATE channels SET plugin = ?, name = ?, config = ?, active = ?,
                              updated_at = ?
                       WHERE id = ?""",
                    (plugin, name, ciphertext, 1 if active else 0, now, channel_id),
                )
                if cursor.rowcount == 0:
                    raise ValueError(f"通道 id={channel_id} 不存在")
            db.commit()
        finally:
            db.close()

        self.invalidate(channel_id)
        logger.info("通道配置已保存: id=%s, plugin=%s", channel_id, plugin)
        return channel_id

    def get_channel(self, channel_id: int) -> tuple[str, ChannelConfig]:
        """
        读取通道插件名和解密后的配置。

        Raises:
            ChannelStoreError: 通道不存在、已停用或配置无法解密。
        """
        cached = self._cache.get(channel_id)
        if cached is not None:
            return cached

        db = get_db()
        try:
            row = db.execute(
                "SELECT id, plugin, config, active FROM channels WHERE id = ?",
                (channel_id,),
            ).fetchone()
        finally:
            db.close()

        if not row:
            raise ChannelStoreError(f"通道 id={channel_id} 不存在")
        if not row["active"]:
            raise ChannelStoreError(f"通道 id={channel_id} 已停用")
        try:
            values = json.loads(_decrypt(row["config"]))
        except (InvalidToken, ValueError) as e:
            logger.error("通道 id=%s 配置解密失败", channel_id)
            raise ChannelStoreError(f"通道 id={channel_id} 配置无法解密") from e

        result = (row["plugin"], ChannelConfig(values, channel_id=row["id"], plugin=row["plugin"]))
        with self._lock:
            self._cache[channel_id] = result
        return result

    def invalidate(self, channel_id: int) -> None:
        with self._lock:
            self._cache.pop(channel_id, None)

    def set_active(self, channel_id: int, active: bool) -> None:
        """
        启用或停用通道。

        Raises:
            ValueError: 通道不存在。
        """
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE channels SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), channel_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"通道 id={channel_id} 不存在")
        finally:
            db.close()
        self.invalidate(channel_id)
