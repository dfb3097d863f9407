from __future__ import annotations

import threading
from typing import Any, Callable

import structlog
from kubernetes import watch
from kubernetes.client import ApiException

DEFAULT_WATCH_TIMEOUT_SECONDS = 300
RELIST_DELAY_SECONDS = 2.0
STOP_JOIN_TIMEOUT_SECONDS = 5.0


def cluster_scoped_key(obj: Any) -> str:
    return obj.metadata.name


def namespaced_key(obj: Any) -> str:
    return f"{obj.metadata.namespace}/{obj.metadata.name}"


class ObjectStore:
    """Thread-safe keyed store holding the latest observed copy of each object."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get_by_key(self, key: str) -> tuple[Any | None, bool]:
        with self._lock:
            if key not in self._items:
                return None, False
            return self._items[key], True

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items)

    def replace(self, items: dict[str, Any]) -> None:
        with self._lock:
            self._items = dict(items)

    def upsert(self, key: str, item: Any) -> None:
        with self._lock:
            self._items[key] = item

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class StoreReflector:
    """Keeps an ObjectStore in step with the cluster via list + watch.

    The store is replaced wholesale on every (re)list, then individual watch
    events are applied until the stream ends or its resourceVersion expires.
    """

    def __init__(
        self,
        list_func: Callable[..., Any],
        store: ObjectStore,
        key_func: Callable[[Any], str],
        *,
        resource: str,
        watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
    ) -> None:
        self.list_func = list_func
        self.store = store
        self.key_func = key_func
        self.resource = resource
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = structlog.get_logger().bind(component="store_reflector", resource=resource)
        self._synced = threading.Event()
        self._stopped = threading.Event()
        self._watch: watch.Watch | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name=f"reflector-{self.resource}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._watch is not None:
            self._watch.stop()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(STOP_JOIN_TIMEOUT_SECONDS)
            if thread.is_alive():
                self.logger.warning("Reflector thread did not exit before the join timeout.")

    def wait_for_sync(self, timeout: float) -> bool:
        return self._synced.wait(timeout)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                resource_version = self.list_and_replace()
                self.watch_from(resource_version)
            except Exception as error:  # pylint: disable=broad-except
                self.logger.warning("Cache sync failed, relisting.", error=str(error))
                self._stopped.wait(RELIST_DELAY_SECONDS)

    def list_and_replace(self) -> str | None:
        response = self.list_func()
        items = {self.key_func(item): item for item in response.items or []}
        self.store.replace(items)
        self._synced.set()
        resource_version = response.metadata.resource_version if response.metadata else None
        self.logger.debug("Cache listed.", items=len(items), resource_version=resource_version)
        return resource_version

    def watch_from(self, resource_version: str | None) -> None:
        self._watch = watch.Watch()
        try:
            for event in self._watch.stream(
                self.list_func,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout_seconds,
            ):
                if self._stopped.is_set():
                    return
                self.apply_event(event)
        except ApiException as error:
            if error.status != 410:
                raise
            self.logger.debug("Watch resourceVersion expired, relisting.")
        finally:
            self._watch.stop()

    def apply_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        obj = event.get("object")
        if event_type == "ERROR":
            raw = event.get("raw_object") or {}
            if raw.get("code") == 410:
                raise ApiException(status=410, reason="Gone")
            raise RuntimeError(f"watch error for {self.resource}: {raw.get('message') or raw}")
        if obj is None:
            return

        key = self.key_func(obj)
        if event_type in {"ADDED", "MODIFIED"}:
            self.store.upsert(key, obj)
        elif event_type == "DELETED":
            self.store.delete(key)
