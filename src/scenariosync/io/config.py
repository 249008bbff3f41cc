"""Configuration loading utilities for scenariosync."""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

from scenariosync.core.models import SyncConfig


def load_config(
    *,
    path: Path | str | None = None,
    data: str | bytes | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> SyncConfig:
    """Load a :class:`SyncConfig` from a TOML file or TOML text.

    Exactly one of ``path`` or ``data`` is required. ``overrides`` are merged
    into the parsed tables key by key before validation, so a single setting
    can be changed without restating its whole section.

    Raises:
        FileNotFoundError: if ``path`` does not exist.
        ValueError: if the source is not a readable TOML file, or if the
            settings do not match the schema (pydantic's ``ValidationError``).

    """
    if (path is None) == (data is None):
        msg = "Provide exactly one of 'path' or 'data' when loading configuration."
        raise ValueError(msg)

    if path is not None:
        tables = _read_file(Path(path))
    else:
        text = data if isinstance(data, str) else cast("bytes", data).decode("utf-8")
        tables = _parse(text, source="<data>")

    if overrides:
        tables = _deep_merge(tables, overrides)
    return SyncConfig.model_validate(tables)


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    if not path.is_file():
        msg = f"Configuration path is not a file: {path}"
        raise ValueError(msg)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        msg = f"Unable to read configuration file {path}: {exc}"
        raise ValueError(msg) from exc
    return _parse(text, source=str(path))


def _parse(text: str, *, source: str) -> dict[str, Any]:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        msg = f"Invalid TOML in {source}: {exc}"
        raise ValueError(msg) from exc


def _deep_merge(base: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(
                cast("Mapping[str, Any]", current), cast("Mapping[str, Any]", value),
            )
        else:
            merged[key] = value
    return merged


__all__ = ["load_config"]
