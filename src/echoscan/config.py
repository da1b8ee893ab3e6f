from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from echoscan.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class AudioDeviceConfig:
    play_device: int | str | None = None
    rec_device: int | str | None = None
    sample_rate: int = 48000
    channels_play: int = 1
    channels_rec: int = 1
    frames_per_buffer: int = 1024  # smaller blocks keep the ring cursor close to real time
    latency: str | float | None = None  # "low", "high", float seconds or None

    @classmethod
    def from_file(cls, config_path: str | Path | None = None) -> AudioDeviceConfig:
        """Load audio device config from file.

        Args:
            config_path: Path to config file. If None, uses ~/.config/echoscan/audio_config.json
        """
        if config_path is None:
            config_path = Path.home() / ".config" / "echoscan" / "audio_config.json"

        if not Path(config_path).exists():
            return cls()

        try:
            with open(config_path) as f:
                data = json.load(f)
            return cls(**{k: v for k, v in data.items() if hasattr(cls, k)})
        except (json.JSONDecodeError, OSError, TypeError) as e:
            logger.warning("Failed to load audio config from %s: %s", config_path, e)
            return cls()


@dataclass(frozen=True)
class EngineConfig:
    """Ranging parameters, fixed for the lifetime of an engine session."""

    pulse_ms: float = 40.0
    start_freq: float = 15000.0
    end_freq: float = 17000.0
    rec_ms: float = 200.0
    blind_ms: float = 2.0
    noise_gate: float = 0.05  # linear amplitude, 0..1
    smoothing_alpha: float = 0.15
    settle_ms: float = 50.0
    min_interval_ms: float = 250.0

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.pulse_ms < 0:
            raise ConfigurationError(f"pulse_ms must be >= 0, got {self.pulse_ms}")
        if self.start_freq <= 0 or self.end_freq <= 0:
            raise ConfigurationError("Frequencies must be positive")
        if self.rec_ms <= 0:
            raise ConfigurationError(f"rec_ms must be > 0, got {self.rec_ms}")
        if self.blind_ms < 0:
            raise ConfigurationError(f"blind_ms must be >= 0, got {self.blind_ms}")
        if not (0.0 <= self.noise_gate <= 1.0):
            raise ConfigurationError(f"noise_gate must be in [0, 1], got {self.noise_gate}")
        if not (0.0 < self.smoothing_alpha <= 1.0):
            raise ConfigurationError(f"smoothing_alpha must be in (0, 1], got {self.smoothing_alpha}")
        if self.settle_ms < 0:
            raise ConfigurationError(f"settle_ms must be >= 0, got {self.settle_ms}")
        if self.min_interval_ms < 0:
            raise ConfigurationError(f"min_interval_ms must be >= 0, got {self.min_interval_ms}")

    @property
    def cycle_interval_ms(self) -> float:
        """Target time between chirp emissions."""
        return max(self.min_interval_ms, self.rec_ms + self.settle_ms)

    def window_length(self, sample_rate: int) -> int:
        """Number of samples in one recording window (snapshot length)."""
        return max(1, int(round(sample_rate * self.rec_ms / 1000.0)))

    def ring_capacity(self, sample_rate: int) -> int:
        # At least one second of audio, never shorter than the recording window.
        return max(1, int(round(sample_rate * max(1.0, self.rec_ms / 1000.0))))

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> EngineConfig:
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            if key not in names:
                continue
            try:
                kwargs[key] = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"{key} must be a number, got {value!r}")
        return cls(**kwargs)

    @classmethod
    def from_settings(cls, **overrides: Any) -> EngineConfig:
        """Build a config from the persisted settings file, then apply overrides."""
        from echoscan import settings

        values = settings.get_engine_settings()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(values)
