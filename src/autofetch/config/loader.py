from __future__ import annotations

import os
import shutil
import typing
from pathlib import Path
from typing import Any, MutableMapping, Optional, Sequence

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from autofetch.config.models import AppConfig, ConfigLoadRequest

DEFAULT_CONFIG_EXAMPLE = Path("examples/config.yaml")


def _read_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        _ensure_default_config(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _ensure_default_config(target_path: Path) -> None:
    if not DEFAULT_CONFIG_EXAMPLE.exists():
        return
    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(DEFAULT_CONFIG_EXAMPLE, target_path)


def _load_dotenv_if_present(dotenv_path: Path) -> None:
    if not dotenv_path.exists():
        return
    load_dotenv(dotenv_path=dotenv_path, override=False)


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    remainder = env_var_name[len(prefix) :]
    parts = [p for p in remainder.split("__") if p]
    if not parts:
        raise ValueError(f"Invalid environment variable override name: {env_var_name}")
    return [p.lower() for p in parts]


def _nested_model(annotation: Any) -> Optional[type[BaseModel]]:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    for arg in typing.get_args(annotation):
        model = _nested_model(arg)
        if model is not None:
            return model
    return None


def _validate_key_path(path: Sequence[str]) -> None:
    """Reject override paths that do not name a settings field."""
    model: Optional[type[BaseModel]] = AppConfig
    for index, segment in enumerate(path):
        if model is None:
            break
        field = model.model_fields.get(segment)
        if field is None:
            break
        if index == len(path) - 1:
            return
        # Free-form mapping (record_filter); any key is accepted one level below it.
        if typing.get_origin(field.annotation) is dict and index == len(path) - 2:
            return
        model = _nested_model(field.annotation)
    raise KeyError(f"Unknown configuration key path: {'.'.join(path)}")


def _get_parent_mapping(config: MutableMapping[str, Any], path: Sequence[str]) -> MutableMapping[str, Any]:
    cur: MutableMapping[str, Any] = config
    for segment in path[:-1]:
        next_value = cur.setdefault(segment, {})
        if not isinstance(next_value, dict):
            dotted = ".".join(path)
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
        cur = next_value
    return cur


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> None:
    for name, value in os.environ.items():
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        _validate_key_path(segments)
        parent = _get_parent_mapping(config, segments)

        # Pydantic handles type coercion/validation later.
        parent[segments[-1]] = value


class YamlConfigLoader:
    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        yaml_path = Path(request.yaml_path)
        config = _read_yaml_config(yaml_path)

        if request.dotenv_path is not None:
            _load_dotenv_if_present(Path(request.dotenv_path))

        _apply_env_overrides(config, request.env_prefix)
        return AppConfig.model_validate(config)
