"""Options bundle handed unmodified to stage tools."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PipelineOptions(BaseModel):
    """Tool-facing configuration. The orchestrator never interprets it."""

    model_config = ConfigDict(frozen=True)

    video_backend: Literal["local", "cloud"] = Field(default="local")
    summarization_model: str = Field(default="llama3", min_length=1)
    transcription_model: str = Field(default="base", min_length=1)
    cloud_endpoint: str = Field(default="")
    api_key: str = Field(default="", repr=False)
    summarization_host: str = Field(default="127.0.0.1:11434")
    asset_host: str = Field(default="127.0.0.1:8188")

    @model_validator(mode="after")
    def check_cloud_credentials(self) -> "PipelineOptions":
        if self.video_backend == "cloud":
            if not self.api_key:
                raise ValueError("api_key is required when video_backend is 'cloud'")
            if not self.cloud_endpoint:
                raise ValueError("cloud_endpoint is required when video_backend is 'cloud'")
        return self

    def template_values(self) -> dict[str, str]:
        """Option values usable in command templates (secrets excluded)."""
        return self.model_dump(exclude={"api_key"})
