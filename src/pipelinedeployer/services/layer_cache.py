"""Best-effort docker layer cache backed by ``docker save`` tarballs."""

import hashlib
import os
from pathlib import Path
from typing import Callable, Iterable, Optional, Set

from pipelinedeployer.constants import CACHE_FILE_SUFFIX
from pipelinedeployer.models import CacheOutcome, CacheResult, RunConfiguration


def content_hash(image_ids: Iterable[str]) -> str:
    return hashlib.sha256("\n".join(sorted(image_ids)).encode("utf-8")).hexdigest()


class LayerCacheService:
    """Restores and saves layer caches keyed by client and environment.

    Lookup order is the exact key, then the restore prefixes from most to
    least specific. Within one prefix the newest tarball wins. No method here
    raises: every failure is reported and the build continues without cache.
    """

    def __init__(self, logger, console, cache_dir: str):
        self.logger = logger
        self.console = console
        self.cache_dir = cache_dir

    def find_candidate(self, config: RunConfiguration, exact_key: Optional[str] = None) -> Optional[Path]:
        root = Path(self.cache_dir)
        if not root.is_dir():
            return None

        if exact_key:
            exact = root / f"{exact_key}{CACHE_FILE_SUFFIX}"
            if exact.is_file():
                return exact

        for prefix in config.cache_restore_prefixes():
            matches = [path for path in root.glob(f"{prefix}*{CACHE_FILE_SUFFIX}") if path.is_file()]
            if matches:
                return max(matches, key=lambda path: path.stat().st_mtime)
        return None

    def restore(
        self,
        config: RunConfiguration,
        run_cmd: Callable,
        exact_key: Optional[str] = None,
    ) -> CacheResult:
        try:
            candidate = self.find_candidate(config, exact_key=exact_key)
            if candidate is None:
                self.console.print("[dim]No docker layer cache found. Building without cache.[/dim]")
                return CacheResult(CacheOutcome.MISS)

            key = candidate.name[: -len(CACHE_FILE_SUFFIX)]
            self.console.print(f"[blue]Loading docker layer cache {key}...[/blue]")
            run_cmd(["docker", "load", "-i", str(candidate)], capture_output=True)
        except Exception as exc:
            self.logger.warning("Docker layer cache restore failed, continuing without it: %s", exc)
            return CacheResult(CacheOutcome.ERROR, detail=str(exc))

        self.logger.info("Restored docker layer cache %s", key)
        return CacheResult(CacheOutcome.RESTORED, key=key)

    def snapshot_images(self, run_cmd: Callable) -> Optional[Set[str]]:
        try:
            result = run_cmd(
                ["docker", "image", "ls", "--quiet", "--no-trunc"],
                capture_output=True,
            )
        except Exception as exc:
            self.logger.warning("Could not list docker images for layer caching: %s", exc)
            return None
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def save(
        self,
        config: RunConfiguration,
        images_before: Optional[Set[str]],
        run_cmd: Callable,
    ) -> Optional[str]:
        if images_before is None:
            return None

        images_after = self.snapshot_images(run_cmd)
        if images_after is None:
            return None

        new_images = sorted(images_after - images_before)
        if not new_images:
            self.logger.info("No new docker images to cache.")
            return None

        key = f"{config.cache_key_prefix}{content_hash(new_images)}"
        target = Path(self.cache_dir) / f"{key}{CACHE_FILE_SUFFIX}"
        if target.is_file():
            self.logger.info("Docker layer cache %s is already up to date.", key)
            return key

        temp_path = target.with_name(f".{target.name}.partial")
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            run_cmd(["docker", "save", "-o", str(temp_path), *new_images], capture_output=True)
            os.replace(temp_path, target)
        except Exception as exc:
            self.logger.warning("Could not save docker layer cache %s: %s", key, exc)
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            return None

        self._prune(config, keep=target)
        self.console.print(f"[green]Saved docker layer cache {key}.[/green]")
        return key

    def _prune(self, config: RunConfiguration, keep: Path):
        for path in Path(self.cache_dir).glob(f"{config.cache_key_prefix}*{CACHE_FILE_SUFFIX}"):
            if path == keep:
                continue
            try:
                path.unlink()
                self.logger.debug("Removed stale layer cache %s", path.name)
            except OSError as exc:
                self.logger.warning("Could not remove stale layer cache %s: %s", path, exc)
