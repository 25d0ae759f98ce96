"""
插件注册表：扫描支付插件目录并加载插件，支持热更新。

目录约定：每个渠道一个目录，入口文件为 <name>/<name>_plugin.py，
入口模块导出继承 ChannelPlugin 的 Plugin 类。

并发约定：
- 所有写操作（加载、重载、卸载）串行执行（单写者）
- 索引采用写时复制，新字典构造完成后整体替换引用，
  读者不加锁，只会看到替换前或替换后的完整映射
- 新插件实例完成加载并通过描述校验后才会替换旧实例，
  已持有旧实例的调用继续在旧实例上完成，插件对象不会被原地修改
- 加载失败只记录日志，保留原有的可用插件
"""

import asyncio
import hashlib
import importlib.util
import itertools
import logging
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from paygate.models.schemas import PluginDescriptor
from paygate.plugins.base import MAX_AMOUNT_TOLERANCE, ChannelPlugin
from paygate.services.provider_http import ProviderHTTP

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = "_plugin.py"

# 文件变化后等待的去抖时间（秒）
CHANGE_DEBOUNCE = 0.1
# 新增目录等待文件全部写入的时间（秒）
ADD_SETTLE = 0.5


class PluginLoadError(Exception):
    """插件加载或描述校验失败。"""
    pass


@dataclass(frozen=True)
class RegistryEntry:
    name: str
    plugin: ChannelPlugin
    path: Path
    mtime_ns: int
    digest: str
    module_name: str


class PluginRegistry:
    """按名称索引的插件注册表。"""

    def __init__(self, plugins_dir, http: ProviderHTTP | None = None, clock=time.monotonic):
        self.plugins_dir = Path(plugins_dir)
        self.http = http or ProviderHTTP()
        self._entries: dict[str, RegistryEntry] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._clock = clock
        # 热加载状态：目录名 -> 入口文件签名；目录名 -> (动作, 到期时间)
        self._seen: dict[str, tuple | None] = {}
        self._pending: dict[str, tuple[str, float]] = {}

    # ── 查询 ──────────────────────────────────────────────

    def resolve(self, name: str) -> ChannelPlugin | None:
        """按名称取插件实例，不存在返回 None。"""
        entry = self._entries.get(name)
        return entry.plugin if entry else None

    def names(self) -> list[str]:
        return sorted(self._entries)

    # ── 加载 / 卸载 ───────────────────────────────────────

    def entry_path(self, name: str) -> Path:
        return self.plugins_dir / name / f"{name}{ENTRY_SUFFIX}"

    def discover(self) -> list[str]:
        """列出插件目录下的候选插件目录名。"""
        if not self.plugins_dir.exists():
            self.plugins_dir.mkdir(parents=True, exist_ok=True)
            logger.info("创建插件目录: %s", self.plugins_dir)
            return []
        return sorted(
            p.name for p in self.plugins_dir.iterdir()
            if p.is_dir() and not p.name.startswith(("_", "."))
        )

    def load_all(self) -> int:
        """扫描全部插件目录并加载，返回成功加载的数量。"""
        names = self.discover()
        for name in set(self._entries) - set(names):
            self.unload(name)
        loaded = sum(1 for name in names if self.load(name))
        self._seen = self._snapshot(names)
        self._pending.clear()
        logger.info("已加载 %d 个支付插件（共 %d 个目录）", loaded, len(names))
        return loaded

    def load(self, name: str, only_if_changed: bool = False) -> bool:
        """
        加载（或重新加载）单个插件并原子替换注册表项。

        Args:
            name: 插件目录名。
            only_if_changed: 入口文件内容与当前注册项一致时跳过。

        Returns:
            True 表示注册表中已是该文件对应的可用插件。
        """
        with self._lock:
            old = self._entries.get(name)
            try:
                source, digest, mtime_ns = self._read_source(name)
                if only_if_changed and old and old.digest == digest:
                    return True
                entry = self._import(name, source, digest, mtime_ns)
            except PluginLoadError as e:
                if old:
                    logger.warning("插件 %s 加载失败，保留原版本: %s", name, e)
                else:
                    logger.warning("插件 %s 加载失败: %s", name, e)
                return False

            entries = dict(self._entries)
            entries[name] = entry
            self._entries = entries

        if old:
            sys.modules.pop(old.module_name, None)
            logger.info("插件已重新加载: %s", entry.plugin.info.showname or name)
        else:
            logger.info("插件加载成功: %s", entry.plugin.info.showname or name)
        return True

    def reload(self, name: str) -> bool:
        """重新加载单个插件；新版本可用前旧版本继续对外服务。"""
        return self.load(name)

    def unload(self, name: str) -> bool:
        with self._lock:
            old = self._entries.get(name)
            if not old:
                return False
            entries = dict(self._entries)
            del entries[name]
            self._entries = entries
        sys.modules.pop(old.module_name, None)
        logger.info("插件已卸载: %s", name)
        return True

    def _read_source(self, name: str) -> tuple[bytes, str, int]:
        path = self.entry_path(name)
        try:
            source = path.read_bytes()
            mtime_ns = path.stat().st_mtime_ns
        except OSError as e:
            raise PluginLoadError(f"插件文件不存在或无法读取: {path} ({e})")
        return source, hashlib.sha256(source).hexdigest(), mtime_ns

    def _import(self, name: str, source: bytes, digest: str, mtime_ns: int) -> RegistryEntry:
        """
        以独立模块名执行插件源码并实例化。

        每次加载使用新的模块对象，旧模块及其实例不受影响。
        直接编译读取到的源码，保证摘要与实际执行的代码一致。
        """
        path = self.entry_path(name)
        module_name = f"paygate_channel_{name}_v{next(self._versions)}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginLoadError(f"无法创建插件模块: {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            code = compile(source, str(path), "exec")
            exec(code, module.__dict__)
            plugin_cls = getattr(module, "Plugin", None)
            if not (isinstance(plugin_cls, type) and issubclass(plugin_cls, ChannelPlugin)):
                raise PluginLoadError("入口模块缺少 Plugin 类（需继承 ChannelPlugin）")
            plugin = plugin_cls(http=self.http)
            self._validate(name, plugin)
        except PluginLoadError:
            sys.modules.pop(module_name, None)
            raise
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(f"{type(e).__name__}: {e}") from e

        return RegistryEntry(
            name=name,
            plugin=plugin,
            path=path,
            mtime_ns=mtime_ns,
            digest=digest,
            module_name=module_name,
        )

    @staticmethod
    def _validate(name: str, plugin: ChannelPlugin) -> None:
        """校验插件描述的必填项。"""
        info = plugin.info
        if not isinstance(info, PluginDescriptor) or not info.name:
            raise PluginLoadError("缺少插件描述 info.name")
        if info.name != name:
            raise PluginLoadError(f"插件名 {info.name} 与目录名 {name} 不一致")
        if not info.types:
            raise PluginLoadError("插件未声明支持的支付方式 info.types")
        if not 0 <= info.amount_tolerance <= MAX_AMOUNT_TOLERANCE:
            raise PluginLoadError("金额容差只能为 0 或 1 分")
        cls = type(plugin)
        for method in ("submit", "notify"):
            if getattr(cls, method) is getattr(ChannelPlugin, method):
                raise PluginLoadError(f"插件未实现 {method}")

    # ── 热加载 ────────────────────────────────────────────

    def _snapshot(self, names=None) -> dict[str, tuple | None]:
        """目录名 -> 入口文件 (mtime_ns, size)，入口文件不存在时为 None。"""
        result = {}
        for name in (self.discover() if names is None else names):
            try:
                st = self.entry_path(name).stat()
                result[name] = (st.st_mtime_ns, st.st_size)
            except OSError:
                result[name] = None
        return result

    def poll_changes(self, now: float | None = None) -> list[tuple[str, str]]:
        """
        对比插件目录与上次扫描结果，执行到期的加载 / 重载 / 卸载。

        - 入口文件变化：去抖 CHANGE_DEBOUNCE 秒后重载，期间再次变化则重新计时
        - 新增目录：等待 ADD_SETTLE 秒后首次加载
        - 删除目录：立即卸载

        Returns:
            本次执行的动作列表 [(动作, 插件名)]。
        """
        now = self._clock() if now is None else now
        current = self._snapshot()
        actions = []

        for name, signature in current.items():
            if name not in self._seen:
                logger.info("检测到新增插件目录: %s", name)
                self._pending[name] = ("load", now + ADD_SETTLE)
            elif signature != self._seen[name]:
                kind = self._pending.get(name, ("reload", 0))[0]
                delay = ADD_SETTLE if kind == "load" else CHANGE_DEBOUNCE
                self._pending[name] = (kind, now + delay)

        for name in set(self._seen) - set(current):
            self._pending.pop(name, None)
            if self.unload(name):
                actions.append(("unload", name))

        self._seen = current

        for name, (kind, due) in sorted(self._pending.items()):
            if due > now:
                continue
            del self._pending[name]
            if kind == "load":
                self.load(name)
            else:
                logger.info("检测到插件文件变化: %s", name)
                self.load(name, only_if_changed=True)
            actions.append((kind, name))

        return actions

    async def watch(self, interval: float = 0.2) -> None:
        """后台轮询插件目录变化，直到任务被取消。"""
        logger.info("插件热加载监听已启动: %s", self.plugins_dir)
        try:
            while True:
                try:
                    await asyncio.to_thread(self.poll_changes)
                except Exception as e:
                    logger.error("插件目录扫描异常: %s", e)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("插件热加载监听已停止")
            raise

    # ── 配置界面 ──────────────────────────────────────────
    # list 会遮蔽类体内的内置 list，放在类的最后定义

    def by_type(self, typename: str) -> list[PluginDescriptor]:
        """支持指定支付方式的插件描述。"""
        return [info for info in self.list() if typename in info.types]

    def list(self) -> list[PluginDescriptor]:
        """按名称排序的插件描述列表。"""
        entries = self._entries
        return [entries[name].plugin.info for name in sorted(entries)]
