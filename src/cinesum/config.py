"""Application configuration using Pydantic BaseSettings."""

from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings

from cinesum.models.options import PipelineOptions
from cinesum.models.pipeline import StageId


class Settings(BaseSettings):
    """CineSum configuration loaded from environment variables."""

    model_config = {"env_prefix": "CINESUM_", "env_file": ".env", "extra": "ignore"}

    # Tool options
    video_backend: Literal["local", "cloud"] = "local"
    summarization_model: str = "llama3"
    transcription_model: str = "base"
    cloud_endpoint: str = ""
    api_key: str = ""
    summarization_host: str = "127.0.0.1:11434"
    asset_host: str = "127.0.0.1:8188"

    # Stage commands, formatted per run (see CommandTool)
    transcription_command: str = ""
    diarization_command: str = ""
    summarization_command: str = ""
    asset_generation_command: str = ""
    assembly_command: str = ""

    # Execution
    stage_timeout_seconds: float | None = None
    output_dir: Path = Path("/tmp/cinesum/output")

    # Cloud backend
    cloud_poll_interval: float = 2.0
    cloud_retry_attempts: int = 3

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_cloud_backend(self) -> "Settings":
        if self.video_backend == "cloud":
            if not self.api_key:
                raise ValueError("CINESUM_API_KEY is required when CINESUM_VIDEO_BACKEND=cloud")
            if not self.cloud_endpoint:
                raise ValueError(
                    "CINESUM_CLOUD_ENDPOINT is required when CINESUM_VIDEO_BACKEND=cloud"
                )
        return self

    def pipeline_options(self) -> PipelineOptions:
        """Build the options bundle passed to stage tools."""
        return PipelineOptions(
            video_backend=self.video_backend,
            summarization_model=self.summarization_model,
            transcription_model=self.transcription_model,
            cloud_endpoint=self.cloud_endpoint,
            api_key=self.api_key,
            summarization_host=self.summarization_host,
            asset_host=self.asset_host,
        )

    def stage_command(self, stage: StageId) -> str:
        return getattr(self, f"{stage.value}_command")


def get_settings() -> Settings:
    """Return a fresh settings instance."""
    return Settings()
