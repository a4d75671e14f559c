"""
Local rule loader reading rule documents from a directory tree.

A rule file ``<root>/pricing/discounts.json`` has rule id
``pricing/discounts``. An optional sibling ``discounts.meta.json`` supplies
``version``, ``tags`` and ``lastModified``; without one the version is the
file's modification time in milliseconds.

Hot reload runs a watchdog observer over the directory. Events are debounced
into a rescan on the event loop, which diffs file and sidecar mtimes and
reports added, modified and deleted rule ids to the registered callbacks.
"""

import asyncio
import inspect
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from shared.errors import FileSystemError, InvalidInputError, RuleNotFoundError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_call
from ..models import LoadedRule, RuleMetadata
from .base import RuleLoader
from .remote import parse_timestamp

ChangeCallback = Callable[[str, str], Any]

RULE_ADDED = "added"
RULE_MODIFIED = "modified"
RULE_DELETED = "deleted"


class LocalRuleLoader(RuleLoader):
    """Loads rules from ``rules_path`` and optionally watches it for changes."""

    def __init__(self,
                 rules_path: str,
                 metadata_suffix: str = ".meta.json",
                 recursive: bool = True,
                 debounce: float = 0.3):
        self.rules_path = Path(rules_path).resolve()
        self.metadata_suffix = metadata_suffix
        self.recursive = recursive
        self.debounce = debounce
        self.logger = get_logger("rules.loader.local")

        self._callbacks: List[ChangeCallback] = []
        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._rescan_handle: Optional[asyncio.TimerHandle] = None
        self._rescan_lock: Optional[asyncio.Lock] = None
        self._pending: Set[asyncio.Future] = set()
        self._fingerprints: Dict[str, Tuple[int, Optional[int]]] = {}

    @classmethod
    def from_settings(cls, config) -> "LocalRuleLoader":
        return cls(
            rules_path=config.local_rules_path,
            metadata_suffix=config.metadata_file_suffix,
            recursive=config.recursive_scan,
            debounce=config.hot_reload_debounce,
        )

    # Paths

    def _scan(self) -> List[Path]:
        if not self.rules_path.is_dir():
            raise FileSystemError(
                f"Rules directory not found: {self.rules_path}",
                operation="loader.load_all"
            )
        pattern = "**/*.json" if self.recursive else "*.json"
        return sorted(
            path for path in self.rules_path.glob(pattern)
            if path.is_file() and not path.name.endswith(self.metadata_suffix)
        )

    def rule_id_for(self, path: Path) -> str:
        return path.relative_to(self.rules_path).with_suffix("").as_posix()

    def resolve_rule_path(self, rule_id: str) -> Path:
        """Path of ``rule_id``; rejects ids escaping the rules directory."""
        path = (self.rules_path / f"{rule_id}.json").resolve()
        if path != self.rules_path and self.rules_path not in path.parents:
            raise InvalidInputError(
                f"Rule id '{rule_id}' resolves outside the rules directory",
                rule_id=rule_id,
                operation="loader.resolve_path"
            )
        return path

    def _metadata_path(self, path: Path) -> Path:
        return path.with_name(path.stem + self.metadata_suffix)

    # Reading

    def _read_metadata(self, path: Path, rule_id: str) -> RuleMetadata:
        stat = path.stat()
        sidecar = self._metadata_path(path)
        fallback_modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        fallback_version = str(int(stat.st_mtime * 1000))

        if not sidecar.is_file():
            return RuleMetadata(id=rule_id, version=fallback_version, last_modified=fallback_modified)

        raw = json.loads(sidecar.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"metadata file {sidecar.name} must contain an object")

        last_modified = raw.get("lastModified")
        return RuleMetadata(
            id=rule_id,
            version=str(raw.get("version") or fallback_version),
            tags=frozenset(raw.get("tags") or []),
            last_modified=parse_timestamp(last_modified) if last_modified else fallback_modified,
        )

    def _read_rule(self, path: Path, rule_id: str) -> LoadedRule:
        data = path.read_bytes()
        json.loads(data)
        return LoadedRule(data=data, metadata=self._read_metadata(path, rule_id))

    def _load_all_sync(self) -> Dict[str, LoadedRule]:
        paths = self._scan()
        rules: Dict[str, LoadedRule] = {}
        errors: List[str] = []

        for path in paths:
            rule_id = self.rule_id_for(path)
            try:
                rules[rule_id] = self._read_rule(path, rule_id)
            except (OSError, ValueError) as e:
                errors.append(f"{path}: {e}")
                self.logger.warning("Skipping unreadable rule file", path=str(path), error=str(e))

        if errors and not rules:
            raise FileSystemError(
                f"Failed to load any rules from {self.rules_path}",
                details={"errors": errors},
                operation="loader.load_all"
            )
        return rules

    async def load_all(self, project_id: Optional[str] = None) -> Dict[str, LoadedRule]:
        rules = await asyncio.to_thread(self._load_all_sync)
        self.logger.info("Rules loaded from directory", path=str(self.rules_path), count=len(rules))
        return rules

    async def load_one(self, rule_id: str, retry: Optional[RetryConfig] = None) -> LoadedRule:
        if retry is None:
            return await self._load_one(rule_id)
        return await retry_call(
            lambda: self._load_one(rule_id),
            retry,
            operation_name=f"loader.load_one.{rule_id}"
        )

    async def _load_one(self, rule_id: str) -> LoadedRule:
        path = self.resolve_rule_path(rule_id)
        if not path.is_file():
            raise RuleNotFoundError(rule_id, operation="loader.load_one")
        try:
            return await asyncio.to_thread(self._read_rule, path, rule_id)
        except FileNotFoundError as e:
            raise RuleNotFoundError(rule_id, operation="loader.load_one", cause=e) from e
        except (OSError, ValueError) as e:
            raise FileSystemError(
                f"Failed to read rule {rule_id}: {e}",
                rule_id=rule_id,
                operation="loader.load_one",
                cause=e
            ) from e

    async def check_versions(self, versions: Mapping[str, str]) -> Dict[str, bool]:
        result: Dict[str, bool] = {}
        for rule_id, version in versions.items():
            try:
                path = self.resolve_rule_path(rule_id)
                metadata = await asyncio.to_thread(self._read_metadata, path, rule_id)
                result[rule_id] = metadata.version != version
            except (OSError, ValueError, InvalidInputError) as e:
                self.logger.warning("Version check failed", rule_id=rule_id, error=str(e))
                result[rule_id] = True
        return result

    # Hot reload

    def on_change(self, callback: ChangeCallback):
        """Register ``callback(rule_id, change)``; change is added, modified or deleted."""
        self._callbacks.append(callback)

    def remove_change_callback(self, callback: ChangeCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    @property
    def is_watching(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def _fingerprint(self) -> Dict[str, Tuple[int, Optional[int]]]:
        fingerprints = {}
        for path in self._scan():
            try:
                sidecar = self._metadata_path(path)
                sidecar_mtime = sidecar.stat().st_mtime_ns if sidecar.is_file() else None
                fingerprints[self.rule_id_for(path)] = (path.stat().st_mtime_ns, sidecar_mtime)
            except OSError:
                continue
        return fingerprints

    def detect_changes(self) -> List[Tuple[str, str]]:
        """Diff the directory against the last observed state."""
        current = self._fingerprint()
        previous = self._fingerprints
        changes: List[Tuple[str, str]] = []

        for rule_id, fingerprint in current.items():
            if rule_id not in previous:
                changes.append((rule_id, RULE_ADDED))
            elif previous[rule_id] != fingerprint:
                changes.append((rule_id, RULE_MODIFIED))
        for rule_id in previous:
            if rule_id not in current:
                changes.append((rule_id, RULE_DELETED))

        self._fingerprints = current
        return changes

    async def _dispatch(self, rule_id: str, change: str):
        self.logger.info("Rule file changed", rule_id=rule_id, change=change)
        for callback in list(self._callbacks):
            try:
                outcome = callback(rule_id, change)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.logger.error("Change callback failed", rule_id=rule_id, change=change, error=str(e))

    def _schedule_rescan(self):
        """Debounce filesystem events into one rescan; runs on the event loop."""
        if self._loop is None:
            return
        if self._rescan_handle is not None:
            self._rescan_handle.cancel()
        self._rescan_handle = self._loop.call_later(self.debounce, self._start_rescan)

    def _start_rescan(self):
        self._rescan_handle = None
        task = asyncio.ensure_future(self._rescan())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _rescan(self):
        async with self._rescan_lock:
            try:
                changes = await asyncio.to_thread(self.detect_changes)
            except (OSError, FileSystemError) as e:
                self.logger.warning("Rules directory scan failed", error=str(e))
                return
            for rule_id, change in changes:
                await self._dispatch(rule_id, change)

    async def start_watching(self):
        if self.is_watching:
            return
        self._loop = asyncio.get_running_loop()
        self._rescan_lock = asyncio.Lock()
        self._fingerprints = await asyncio.to_thread(self._fingerprint)

        observer = Observer()
        observer.schedule(
            RuleFileEventHandler(self, self._loop),
            str(self.rules_path),
            recursive=self.recursive
        )
        observer.start()
        self._observer = observer
        self.logger.info("Hot reload started", path=str(self.rules_path), debounce=self.debounce)

    async def stop_watching(self):
        if self._observer is None:
            return
        observer, self._observer = self._observer, None
        observer.stop()
        await asyncio.to_thread(observer.join)

        if self._rescan_handle is not None:
            self._rescan_handle.cancel()
            self._rescan_handle = None
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._loop = None
        self.logger.info("Hot reload stopped")

    async def close(self):
        await self.stop_watching()


class RuleFileEventHandler(FileSystemEventHandler):
    """Forwards rule file events from the observer thread to the event loop."""

    IGNORED_EVENTS = frozenset(["opened", "closed_no_write"])

    def __init__(self, loader: LocalRuleLoader, loop: asyncio.AbstractEventLoop):
        self.loader = loader
        self.loop = loop

    def is_rule_event(self, event: FileSystemEvent) -> bool:
        if event.is_directory or event.event_type in self.IGNORED_EVENTS:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(os.fsdecode(path).endswith(".json") for path in paths if path)

    def on_any_event(self, event: FileSystemEvent):
        if self.is_rule_event(event):
            self.loop.call_soon_threadsafe(self.loader._schedule_rescan)
