from typing import Optional

from pydantic_settings import BaseSettings


class ConsolidationSettings(BaseSettings):
    segment_duration_s: float = 2.0
    overlap_duration_s: float = 0.3
    sample_rate: int = 16000
    channels: int = 1
    stability_threshold_s: float = 5.0
    dedup_max_window: int = 10
    dedup_match_ratio: float = 0.8
    add_newlines: bool = False
    output_format: str = "text"  # text | records
    idle_timeout_s: Optional[float] = None

    model_config = {"env_prefix": "CONSOLIDATION_"}


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    max_sessions: int = 10

    model_config = {"env_prefix": "GATEWAY_"}


class ASRSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8001
    model_size: str = "large-v3"
    device: str = "auto"
    compute_type: str = "auto"
    beam_size: int = 5
    language: Optional[str] = None

    model_config = {"env_prefix": "ASR_"}
