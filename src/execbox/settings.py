from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- container engine ----
    docker_base_url: Optional[str] = None
    container_prefix: str = "execbox"
    image_prefix: str = "execbox"
    images: Dict[str, str] = {}

    # ---- container limits ----
    memory_limit: str = "512m"
    nano_cpus: int = 1_000_000_000
    pids_limit: int = 256
    tmpfs_size: str = "100m"
    dns_servers: List[str] = ["8.8.8.8", "8.8.4.4"]
    # unread output characters per session before reads from the process pause
    max_buffered_output: int = 1_048_576

    # ---- in-container layout ----
    workspace_root: str = "/workspace"
    staging_root: str = "/custom-libs"
    cache_root: str = "/dependencies"
    sandbox_uid: int = 1001
    sandbox_gid: int = 1001

    # ---- timeouts / retries ----
    exec_timeout_s: float = 60.0
    grace_s: float = 1.0
    stop_timeout_s: int = 2
    install_timeouts: Dict[str, float] = {}
    retry_attempts: int = 3
    retry_base_delay_s: float = 0.2
    retry_max_delay_s: float = 2.0
    install_retries: int = 1

    # ---- request limits ----
    max_source_bytes: int = 50_000
    max_files: int = 200

    # ---- custom libraries ----
    libraries_dir: Path = Path("uploads/libraries")

    # ---- http ----
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="EXECBOX_", extra="ignore")

    def image_for(self, language: str, default: str) -> str:
        if language in self.images:
            return self.images[language]
        return f"{self.image_prefix}-{default}"

    def install_timeout_for(self, language: str, default: float) -> float:
        return float(self.install_timeouts.get(language, default))


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return data


def load_settings() -> Settings:
    # env EXECBOX_* first, then conf/execbox.yaml (or EXECBOX_CONF) for keys the env left unset
    s = Settings()
    data = _read_yaml(os.environ.get("EXECBOX_CONF", "conf/execbox.yaml"))

    update: Dict[str, Any] = {}
    for section in ("engine", "limits", "layout", "timeouts", "requests", "http"):
        block = data.get(section) or {}
        if not isinstance(block, dict):
            continue
        for key, value in block.items():
            if key not in Settings.model_fields:
                continue
            if f"EXECBOX_{key.upper()}" in os.environ:
                continue
            update[key] = value

    if isinstance(data.get("images"), dict) and "EXECBOX_IMAGES" not in os.environ:
        update["images"] = {str(k): str(v) for k, v in data["images"].items()}

    if update:
        # round-trip through validation so YAML values get the declared types
        s = Settings.model_validate({**s.model_dump(), **update})
    return s
