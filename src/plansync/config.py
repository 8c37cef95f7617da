"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

import platformdirs

APP_NAME = "plansync"
APP_AUTHOR = "plansync"
ENV_PREFIX = "PLANSYNC_"

# camelCase spellings accepted in config.toml
_TOML_ALIASES = {
	"maxDistanceKm": "max_distance_km",
	"maxTimeDeltaHours": "max_time_delta_hours",
	"microPlanHorizonHours": "micro_plan_horizon_hours",
	"sweepIntervalSeconds": "sweep_interval_seconds",
}


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	notifications_db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Overlap matching
	max_distance_km: float = 5.0
	max_time_delta_hours: float = 2.0

	# Plan creation
	micro_plan_horizon_hours: float = 24.0

	# Expiry sweeps
	sweep_interval_seconds: float = 60.0
	sweep_jitter_seconds: float = 5.0
	sweep_shards: int = 4
	idle_view_ttl_seconds: float = 300.0

	# Collaborator retries
	retry_attempts: int = 5
	retry_base_delay_seconds: float = 0.5
	retry_max_delay_seconds: float = 30.0

	notify_friend_added: bool = True
	subscription_queue_size: int = 256
	log_level: str = "INFO"

	def __post_init__(self) -> None:
		self.notifications_db_path = self.data_dir / "notifications.db"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)

	def validate(self) -> None:
		"""Reject settings the engine cannot run with."""
		positive = (
			"max_distance_km",
			"max_time_delta_hours",
			"micro_plan_horizon_hours",
			"sweep_interval_seconds",
			"retry_base_delay_seconds",
			"retry_max_delay_seconds",
		)
		for name in positive:
			if getattr(self, name) <= 0:
				raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
		for name in ("sweep_shards", "retry_attempts", "subscription_queue_size"):
			if getattr(self, name) < 1:
				raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
		if self.sweep_jitter_seconds < 0 or self.idle_view_ttl_seconds < 0:
			raise ValueError("sweep_jitter_seconds and idle_view_ttl_seconds must not be negative")

	def as_dict(self) -> dict:
		return {f.name: getattr(self, f.name) for f in fields(self)}


_PATH_FIELDS = {"config_dir", "data_dir"}


def _coerce(config: Config, key: str, value):
	"""Convert a raw env/toml value to the type of the field's default."""
	if key in _PATH_FIELDS:
		return Path(os.path.expanduser(str(value)))
	current = getattr(config, key)
	if isinstance(current, bool):
		if isinstance(value, bool):
			return value
		return str(value).strip().lower() in ("1", "true", "yes", "on")
	if isinstance(current, int):
		return int(value)
	if isinstance(current, float):
		return float(value)
	return str(value)


def _settable_fields() -> set[str]:
	return {f.name for f in fields(Config) if f.init}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply PLANSYNC_* environment variable overrides."""
	for name in _settable_fields():
		val = os.getenv(ENV_PREFIX + name.upper())
		if val:
			setattr(config, name, _coerce(config, name, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	settable = _settable_fields()
	for key, val in data.items():
		key = _TOML_ALIASES.get(key, key)
		if key in settable:
			setattr(config, key, _coerce(config, key, val))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	# The config dir itself may be overridden from the environment
	env_config_dir = os.getenv(ENV_PREFIX + "CONFIG_DIR")
	if env_config_dir:
		config.config_dir = Path(env_config_dir)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.validate()
	config.ensure_dirs()
	return config
