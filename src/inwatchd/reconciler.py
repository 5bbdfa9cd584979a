"""Config reconciler: bring the registry in line with a configuration resource."""

import logging
import os
from pathlib import Path
from typing import Dict, List, Set

from .exceptions import ConfigConflictError, ConfigParseError
from .masks import CLOSE_WRITE, DELETE_SELF, MOVE_SELF
from .models import (
    BOOTSTRAP_SOURCE,
    LoadConfig,
    ReconcileReport,
    SetWatch,
    UpsertResult,
    WatchSpec,
)
from .parser import iter_config, parse_set_watch
from .registry import WatchRegistry

logger = logging.getLogger(__name__)

# Watch a configuration resource uses to hot-reload itself.
SELF_WATCH_MASK = CLOSE_WRITE | MOVE_SELF | DELETE_SELF


class ConfigReconciler:
    """
    Loads line-oriented configuration resources into the registry.

    Each load builds the full candidate set for one resource, upserts every
    candidate, fires directives, then prunes entries the resource owns but
    no longer declares. A resource at or below ``truncate_threshold`` bytes
    (or missing) is retracted: everything it owns is removed.
    """

    def __init__(self, registry: WatchRegistry, truncate_threshold: int = 1):
        self.registry = registry
        self.truncate_threshold = truncate_threshold
        self._loading: Set[str] = set()
        self._retracting: Set[str] = set()

    def load(self, config_path: str, owner: str = BOOTSTRAP_SOURCE) -> ReconcileReport:
        """
        Reconcile the registry against one configuration resource.

        Args:
            config_path: Resource to load
            owner: Source that owns the resource's own hot-reload watch

        Returns:
            What changed
        """
        config_path = os.path.abspath(config_path)
        report = ReconcileReport(source=config_path)

        if config_path in self._loading:
            logger.warning(f"{config_path} is already being loaded; skipping nested load")
            return report

        self._loading.add(config_path)
        try:
            self._ensure_self_watch(config_path, owner)
            self._reconcile(config_path, report)
        finally:
            self._loading.discard(config_path)

        logger.info(f"Loaded {config_path}: {report.summary()}")
        return report

    def retract(self, source: str) -> List[str]:
        """
        Remove every entry owned by ``source``.

        Returns:
            Paths removed (including cascaded nested resources)
        """
        if source in self._retracting:
            return []

        self._retracting.add(source)
        try:
            removed: List[str] = []
            for entry in self.registry.owned_by(source):
                removed.extend(self._remove(entry.path, source))
            return removed
        finally:
            self._retracting.discard(source)

    def set_watch(self, directive: SetWatch, source: str) -> UpsertResult:
        """
        Install the watch described by a SET_WATCH directive.

        Raises:
            ConfigParseError: If the directive is malformed
            ConfigConflictError: If the path belongs to another source
        """
        return self.registry.upsert(parse_set_watch(directive, source))

    def _ensure_self_watch(self, config_path: str, owner: str) -> None:
        if config_path in self.registry:
            return
        self.registry.upsert(WatchSpec(
            path=config_path,
            mask=SELF_WATCH_MASK,
            reaction=LoadConfig(),
            source=owner,
        ))

    def _reconcile(self, config_path: str, report: ReconcileReport) -> None:
        try:
            size = os.stat(config_path).st_size
        except FileNotFoundError:
            logger.warning(f"{config_path} does not exist; retracting its watches")
            report.removed = self.retract(config_path)
            report.retracted = True
            return

        if size <= self.truncate_threshold:
            logger.info(f"{config_path} was emptied; retracting its watches")
            report.removed = self.retract(config_path)
            report.retracted = True
            return

        text = Path(config_path).read_text(encoding="utf-8", errors="replace")
        base_dir = os.path.dirname(config_path)

        candidates: Dict[str, WatchSpec] = {}
        for lineno, item in iter_config(text, config_path, base_dir):
            if isinstance(item, ConfigParseError):
                logger.warning(f"{config_path}:{lineno}: {item}; line skipped")
                report.skipped.append(f"{config_path}:{lineno}")
                continue
            if item.path in candidates:
                logger.warning(
                    f"{config_path}:{lineno}: {item.path} declared twice; line skipped"
                )
                report.skipped.append(f"{config_path}:{lineno}")
                continue
            candidates[item.path] = item

        keep: Set[str] = set()
        for spec in list(candidates.values()):
            self._apply(spec, report, candidates, keep)

        for entry in self.registry.owned_by(config_path):
            if entry.path not in candidates and entry.path not in keep:
                report.removed.extend(self._remove(entry.path, config_path))

    def _apply(
        self,
        spec: WatchSpec,
        report: ReconcileReport,
        candidates: Dict[str, WatchSpec],
        keep: Set[str],
    ) -> None:
        try:
            result = self.registry.upsert(spec)
        except ConfigConflictError as e:
            logger.warning(f"Conflict: {e}")
            report.conflicts.append(spec.path)
            return
        getattr(report, result.value).append(spec.path)

        reaction = spec.reaction
        if isinstance(reaction, LoadConfig):
            target = reaction.resolve(spec.path)
            if target == report.source:
                return
            keep.add(target)
            self.load(target, owner=spec.source)

        elif isinstance(reaction, SetWatch):
            if reaction.path == report.source:
                return
            try:
                nested = parse_set_watch(reaction, spec.source)
            except ConfigParseError as e:
                logger.warning(f"{spec.path}: {e}")
                return
            if nested.path in candidates:
                return
            candidates[nested.path] = nested
            self._apply(nested, report, candidates, keep)

    def _remove(self, path: str, reconciling: str) -> List[str]:
        entry = self.registry.remove(path)
        if entry is None:
            return []

        removed = [path]
        if isinstance(entry.reaction, LoadConfig):
            target = entry.reaction.resolve(entry.path)
            if target != reconciling:
                removed.extend(self.retract(target))
        return removed
