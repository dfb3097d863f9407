from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

from .models import VolumeRecord

_REQUIRED_FIELDS = ("name", "internalName", "backendUUID", "protocol", "state")


class VolumeNotFoundError(LookupError):
    """Raised when the registry has no volume with the requested name."""


class RegistryLoadError(RuntimeError):
    """Raised when a registry export cannot be parsed."""


class VolumeRegistry(Protocol):
    def get_volume(self, name: str) -> VolumeRecord: ...


class StaticVolumeRegistry:
    """Volume registry backed by a fixed set of records, e.g. an exported inventory file."""

    def __init__(self, records: Iterable[VolumeRecord]) -> None:
        self._records = {record.name: record for record in records}

    def get_volume(self, name: str) -> VolumeRecord:
        try:
            return self._records[name]
        except KeyError:
            raise VolumeNotFoundError(f"volume {name} was not found") from None

    def names(self) -> list[str]:
        return sorted(self._records)

    @classmethod
    def from_yaml_file(cls, path: Path) -> StaticVolumeRegistry:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as error:
            raise RegistryLoadError(f"Unable to read volume registry {path}: {error}") from error
        return cls.from_yaml(content, source_label=str(path))

    @classmethod
    def from_yaml(cls, content: str, *, source_label: str = "volume registry") -> StaticVolumeRegistry:
        try:
            parsed = yaml.safe_load(content)
        except yaml.YAMLError as error:
            raise RegistryLoadError(f"{source_label} must be valid YAML: {error.__class__.__name__}.") from error

        if parsed is None:
            return cls([])
        if not isinstance(parsed, dict) or not isinstance(parsed.get("volumes", []), list):
            raise RegistryLoadError(f"{source_label} must be a mapping with a 'volumes' list.")

        return cls(_parse_record(entry, index=index, source_label=source_label)
                   for index, entry in enumerate(parsed.get("volumes") or []))


def _parse_record(entry: Any, *, index: int, source_label: str) -> VolumeRecord:
    if not isinstance(entry, dict):
        raise RegistryLoadError(f"{source_label} entry #{index} must be a mapping.")

    missing_fields = [field for field in _REQUIRED_FIELDS if not entry.get(field)]
    if missing_fields:
        raise RegistryLoadError(
            f"{source_label} entry #{index} is missing required field(s): {', '.join(missing_fields)}."
        )

    display_name = entry.get("displayName")
    return VolumeRecord(
        name=str(entry["name"]),
        internal_name=str(entry["internalName"]),
        backend_uuid=str(entry["backendUUID"]),
        protocol=str(entry["protocol"]),
        state=str(entry["state"]).strip().lower(),
        display_name=str(display_name) if display_name else None,
    )
