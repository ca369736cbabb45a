"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings with env var overrides."""

    # Audio
    sample_rate: int = 44100
    frame_size: int = 2048
    hop_size: int = 512

    # Analysis
    min_tempo: float = 60.0
    max_tempo: float = 200.0
    onset_weight: float = 0.4
    tempo_weight: float = 0.4
    spectral_weight: float = 0.2
    confidence_threshold: float = 0.6
    spectral_bands: int = 8

    # Tempo tie-break: peaks within tempo_tie_epsilon (relative) of the best
    # score are resolved towards the preferred range.
    tempo_tie_epsilon: float = 0.05
    preferred_tempo_min: float = 90.0
    preferred_tempo_max: float = 140.0

    # Selection
    min_confidence: float = 0.5
    adaptive_max_iterations: int = 20
    grid_tolerance: float = 0.25

    # Worker offload
    worker_timeout: float = 300.0  # seconds
    worker_max_retries: int = 3
    worker_retry_delay: float = 1.0  # seconds
    worker_retry_backoff: float = 1.0  # multiplier per attempt; 1 keeps the delay constant
    worker_threads: int = 1

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    max_upload_mb: int = 50
    log_level: str = "INFO"

    model_config = {"env_prefix": "BEATPARSER_"}


settings = Settings()
