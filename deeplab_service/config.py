"""
Configuration loader for the DeepLab background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on the image pipeline and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# PASCAL VOC index of the "person" class in the stock DeepLabV3 checkpoints.
PERSON_CLASS_INDEX = 15


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, protected_namespaces=())

    # Model artifact + device
    deeplab_model_path: Path = Field(..., env="DEEPLAB_MODEL_PATH")
    deeplab_device: str = Field("auto", env="DEEPLAB_DEVICE")

    # Fixed model contract
    model_input_size: int = Field(513, env="MODEL_INPUT_SIZE")
    model_num_classes: int = Field(21, env="MODEL_NUM_CLASSES")
    foreground_classes: List[int] = Field([PERSON_CLASS_INDEX], env="FOREGROUND_CLASSES")
    normalize_mean: Tuple[float, float, float] = Field((0.485, 0.456, 0.406), env="NORMALIZE_MEAN")
    normalize_std: Tuple[float, float, float] = Field((0.229, 0.224, 0.225), env="NORMALIZE_STD")
    letterbox: bool = Field(True, env="LETTERBOX")

    # Mask defaults
    default_threshold: float = Field(0.5, env="DEFAULT_THRESHOLD")
    default_feather_radius: int = Field(0, env="DEFAULT_FEATHER_RADIUS")
    max_feather_radius: int = Field(64, env="MAX_FEATHER_RADIUS")
    keep_largest_component: bool = Field(False, env="KEEP_LARGEST_COMPONENT")

    # Concurrency
    serialize_inference: bool = Field(True, env="SERIALIZE_INFERENCE")
    inference_timeout_seconds: float = Field(30.0, env="INFERENCE_TIMEOUT_SECONDS")
    worker_threads: int = Field(2, env="WORKER_THREADS")

    # Host surfaces
    request_timeout_seconds: int = Field(30, env="REQUEST_TIMEOUT_SECONDS")
    output_dir: Optional[Path] = Field(None, env="OUTPUT_DIR")
    log_level: str = Field("INFO", env="LOG_LEVEL")

    # Debugging
    debug: bool = Field(False, env="DEBUG")
    debug_output_dir: Path = Field(Path("/tmp/deeplab_debug"), env="DEBUG_OUTPUT_DIR")

    @field_validator("deeplab_device")
    @classmethod
    def validate_device(cls, v: str) -> str:
        v = v.lower()
        if v not in {"auto", "cpu", "cuda", "mps"}:
            raise ValueError("DEEPLAB_DEVICE must be one of auto|cpu|cuda|mps")
        return v

    @field_validator("default_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("DEFAULT_THRESHOLD must be within [0, 1]")
        return v

    @field_validator("default_feather_radius", "max_feather_radius", "worker_threads")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("model_input_size", "model_num_classes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("model contract dimensions must be positive")
        return v

    @field_validator("normalize_std")
    @classmethod
    def validate_std(cls, v: Tuple[float, float, float]) -> Tuple[float, float, float]:
        if any(s <= 0 for s in v):
            raise ValueError("NORMALIZE_STD entries must be positive")
        return v

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        """(batch, channels, height, width) the network is fed."""
        return (1, 3, self.model_input_size, self.model_input_size)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    settings = Settings()
    if not settings.deeplab_model_path:
        raise ValueError("DEEPLAB_MODEL_PATH is required")
    return settings
