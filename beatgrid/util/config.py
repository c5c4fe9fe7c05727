from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


def default_config_dir() -> Path:
    return Path.home() / ".config" / "beatgrid"


def default_config_path() -> Path:
    env = os.environ.get("BEATGRID_CONFIG")
    if env:
        return Path(env).expanduser()
    return default_config_dir() / "config.json"


@dataclass
class AppConfig:
    sample_rate: int = 44100
    channels: int = 2
    block_size: int = 512
    output_device: str | int | None = None  # sounddevice name or index
    export_dir: str = "out"

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be > 0: {self.sample_rate}")
        if not (1 <= self.channels <= 8):
            raise ValueError(f"channels out of range: {self.channels}")
        if self.block_size <= 0:
            raise ValueError(f"block_size must be > 0: {self.block_size}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "block_size": self.block_size,
            "output_device": self.output_device,
            "export_dir": self.export_dir,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "AppConfig":
        device = d.get("output_device")
        if isinstance(device, str) and device.isdigit():
            device = int(device)
        return AppConfig(
            sample_rate=int(d.get("sample_rate", 44100) or 44100),
            channels=int(d.get("channels", 2) or 2),
            block_size=int(d.get("block_size", 512) or 512),
            output_device=device if device not in ("", None) else None,
            export_dir=str(d.get("export_dir", "out") or "out"),
        )


def load_config(path: Path | None = None) -> AppConfig:
    p = path or default_config_path()
    if not p.exists():
        return AppConfig()
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"config must be a JSON object: {p}")
    return AppConfig.from_dict(data)


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    p = path or default_config_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return p
