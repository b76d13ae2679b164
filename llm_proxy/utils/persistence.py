from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

# libyaml-backed codecs when PyYAML was built with them.
_SAFE_DUMPER = getattr(yaml, "CSafeDumper", yaml.SafeDumper)
_SAFE_LOADER = getattr(yaml, "CSafeLoader", yaml.SafeLoader)


class YamlKeyStore:
    """One YAML document per logical key inside a named directory.

    Writes go to a temporary sibling file that is then renamed over the
    target, so a crash mid-write never leaves a truncated document behind.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.yaml"

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def load(self, key: str, *, default: Any = None) -> Any:
        path = self.path_for(key)
        if not path.exists():
            return default
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.load(handle, Loader=_SAFE_LOADER)  # noqa: S506
        if payload is None:
            return default
        return payload

    def write(self, key: str, payload: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.dump(
                    payload,
                    handle,
                    Dumper=_SAFE_DUMPER,
                    sort_keys=False,
                    allow_unicode=True,
                )
            temp_path.replace(path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise
