from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().with_name("config.yaml")
CONFIG_ENV_VAR = "SLIDECAST_CONFIG"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():  # pragma: no cover - broken install
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _load_override_file() -> Optional[DictConfig]:
    override_path = os.environ.get(CONFIG_ENV_VAR)
    if not override_path:
        return None
    path = Path(override_path)
    if not path.exists():
        raise FileNotFoundError(f"{CONFIG_ENV_VAR} points to a missing file: {path}")
    return OmegaConf.load(path)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the effective configuration.

    Layers, lowest precedence first: packaged defaults, the YAML file named by
    ``SLIDECAST_CONFIG``, then ``overrides``. Struct mode rejects keys that the
    defaults do not declare, so typos fail loudly instead of being ignored.
    Environment interpolations are resolved eagerly after ``.env`` is loaded.
    """
    load_dotenv()
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    layers = [base]
    file_layer = _load_override_file()
    if file_layer is not None:
        layers.append(file_layer)
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = DictConfig(OmegaConf.merge(*layers))
    OmegaConf.resolve(merged)
    return merged


def get_settings_container(config: DictConfig) -> Dict[str, Any]:
    return OmegaConf.to_container(config, resolve=True)  # type: ignore[return-value]
