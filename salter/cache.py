"""Per-region cache of key pairs and security groups.

One ``RegionCache`` is created per region on first use and populated
exactly once, no matter how many threads ask for it at the same time.
Each cache holds an immutable snapshot that is swapped by reference, so
readers never observe a half-built map.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from loguru import logger

from salter.exceptions import IdentityMismatchError, ProviderError
from salter.keys import load_key, normalize_fingerprint
from salter.provider import Provider
from salter.types import FirewallGroup, KeyRecord

type ProviderFactory = Callable[[str], Provider]


@dataclass(frozen=True, slots=True)
class _Snapshot:
    keys: Mapping[str, KeyRecord] = field(default_factory=lambda: MappingProxyType({}))
    groups: Mapping[str, FirewallGroup] = field(default_factory=lambda: MappingProxyType({}))


class RegionCache:
    """Key pairs and security groups for a single region."""

    def __init__(self, region: str, provider: Provider, key_dir: Path) -> None:
        self.region = region
        self.provider = provider
        self._key_dir = key_dir
        self._snapshot = _Snapshot()
        # Held by refresh, group creation and group updates.
        self._refresh_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._log = logger.bind(region=region)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def refresh(self) -> None:
        """Refetch key pairs and groups; commit only if both fetches succeed."""
        with self._refresh_lock:
            self._log.debug(f"{self.region}: refreshing key pairs and security groups")
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"refresh-{self.region}") as pool:
                keys_future = pool.submit(self.provider.list_key_pairs)
                groups_future = pool.submit(self.provider.list_security_groups)
                try:
                    raw_keys = keys_future.result()
                    raw_groups = groups_future.result()
                except Exception as e:
                    raise ProviderError(f"{self.region}: refresh failed: {e}") from e

            current = self._snapshot
            keys = self._build_keys(raw_keys, current.keys)
            groups = self._build_groups(raw_groups)

            with self._write_lock:
                self._snapshot = _Snapshot(MappingProxyType(keys), MappingProxyType(groups))
            self._log.debug(f"{self.region}: cached {len(keys)} key(s), {len(groups)} group(s)")

    def _build_keys(
        self,
        raw_keys: list[tuple[str, str]],
        previous: Mapping[str, KeyRecord],
    ) -> dict[str, KeyRecord]:
        keys: dict[str, KeyRecord] = {}
        for name, fingerprint in raw_keys:
            fingerprint = normalize_fingerprint(fingerprint)
            cached = previous.get(name)
            if cached is not None and cached.fingerprint == fingerprint:
                keys[name] = cached
                continue
            try:
                keys[name] = load_key(name, fingerprint, self._key_dir)
            except FileNotFoundError:
                self._log.debug(f"{self.region}: no local private key for {name}")
            except IdentityMismatchError as e:
                self._log.warning(f"{self.region}: {e}")
            except ValueError as e:
                self._log.warning(f"{self.region}: unreadable key {name}: {e}")
        return keys

    def _build_groups(self, raw_groups: list[FirewallGroup]) -> dict[str, FirewallGroup]:
        groups: dict[str, FirewallGroup] = {}
        for group in raw_groups:
            if group.name in groups:
                self._log.warning(
                    f"{self.region}: duplicate security group name {group.name} "
                    f"({groups[group.name].group_id} kept, {group.group_id} ignored)"
                )
                continue
            groups[group.name] = group
        return groups

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def key_exists(self, name: str) -> bool:
        return name in self._snapshot.keys

    def key(self, name: str) -> KeyRecord:
        return self._snapshot.keys[name]

    def group_exists(self, name: str) -> bool:
        return name in self._snapshot.groups

    def group(self, name: str) -> FirewallGroup:
        return self._snapshot.groups[name]

    @property
    def group_names(self) -> list[str]:
        return sorted(self._snapshot.groups)

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    def ensure_group_exists(self, name: str) -> FirewallGroup:
        """Return the named group, creating it on the provider if absent."""
        if (group := self._snapshot.groups.get(name)) is not None:
            return group

        with self._refresh_lock:
            if (group := self._snapshot.groups.get(name)) is not None:
                return group

            group_id, owner_id = self.provider.create_security_group(name, name)
            group = FirewallGroup(
                name=name,
                region=self.region,
                group_id=group_id,
                owner_id=owner_id,
                vpc_id=self.provider.vpc_id,
            )
            self._store_group(group)
            self._log.info(f"{self.region}: created security group {name} ({group_id})")
            return group

    def update_group(self, group: FirewallGroup) -> None:
        """Replace the cached copy of a group."""
        with self._refresh_lock:
            self._store_group(group)

    def _store_group(self, group: FirewallGroup) -> None:
        with self._write_lock:
            current = self._snapshot
            groups = dict(current.groups)
            groups[group.name] = group
            self._snapshot = _Snapshot(current.keys, MappingProxyType(groups))


class ResourceCache:
    """Region caches, created and populated on first reference.

    Concurrent callers for the same region share a single in-flight
    populate and all receive its result or its exception. A failed
    populate is forgotten so a later call can try again.
    """

    def __init__(self, provider_factory: ProviderFactory, key_dir: Path) -> None:
        self._provider_factory = provider_factory
        self._key_dir = key_dir
        self._lock = threading.Lock()
        self._regions: dict[str, RegionCache] = {}
        self._inflight: dict[str, Future[RegionCache]] = {}

    @property
    def key_dir(self) -> Path:
        return self._key_dir

    def get_region(self, region: str) -> RegionCache:
        with self._lock:
            if (cached := self._regions.get(region)) is not None:
                return cached
            future = self._inflight.get(region)
            owner = future is None
            if future is None:
                future = Future()
                self._inflight[region] = future

        if not owner:
            return future.result()

        try:
            cache = RegionCache(region, self._provider_factory(region), self._key_dir)
            cache.refresh()
        except Exception as e:
            with self._lock:
                del self._inflight[region]
            future.set_exception(e)
            raise

        with self._lock:
            self._regions[region] = cache
            del self._inflight[region]
        future.set_result(cache)
        logger.debug(f"Region cache ready: {region}")
        return cache

    def refresh(self, region: str) -> None:
        with self._lock:
            cached = self._regions.get(region)
        if cached is None:
            self.get_region(region)
        else:
            cached.refresh()

    def provider(self, region: str) -> Provider:
        return self.get_region(region).provider

    def key_exists(self, name: str, region: str) -> bool:
        return self.get_region(region).key_exists(name)

    def key(self, name: str, region: str) -> KeyRecord:
        return self.get_region(region).key(name)

    def group_exists(self, name: str, region: str) -> bool:
        return self.get_region(region).group_exists(name)

    def group(self, name: str, region: str) -> FirewallGroup:
        return self.get_region(region).group(name)

    def ensure_group_exists(self, name: str, region: str) -> FirewallGroup:
        return self.get_region(region).ensure_group_exists(name)


__all__ = [
    "ProviderFactory",
    "RegionCache",
    "ResourceCache",
]
