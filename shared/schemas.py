from __future__ import annotations

import base64
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Capability = Literal["text", "image", "video"]

# Wire request type -> capability
REQUEST_TYPE_TO_KIND: Dict[str, Capability] = {
    "llm_chat": "text",
    "image_generation": "image",
    "video_generation": "video",
}
KIND_TO_MODEL_TYPE: Dict[str, str] = {v: k for k, v in REQUEST_TYPE_TO_KIND.items()}


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----- Job Requests -----
class ChatMessage(WireModel):
    model_config = ConfigDict(frozen=True)

    role: str = "user"
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _null_content(cls, value):
        return "" if value is None else value


class RequestPayload(WireModel):
    model_config = ConfigDict(frozen=True)

    messages: List[ChatMessage] = Field(default_factory=list)
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("messages", "config", mode="before")
    @classmethod
    def _null_is_empty(cls, value, info):
        # The queue sends null for absent lists and maps
        if value is None:
            return [] if info.field_name == "messages" else {}
        return value


class JobRequest(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    model_id: str
    request_type: str
    payload: RequestPayload = Field(default_factory=RequestPayload)
    organization_id: Optional[str] = None
    created_at: Optional[int] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _null_payload(cls, value):
        return {} if value is None else value

    @property
    def kind(self) -> Optional[Capability]:
        return REQUEST_TYPE_TO_KIND.get(self.request_type)


class GenerationOptions(WireModel):
    """Image/video options carried in ``payload.config``. Unknown keys are kept."""
    model_config = ConfigDict(extra="allow")

    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    seed: Optional[int] = None
    sampler: Optional[str] = None
    num_frames: Optional[int] = None
    fps: Optional[int] = None
    workflow: Optional[Any] = None


class ChatOptions(BaseModel):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ChatChunk(BaseModel):
    content: str = ""
    done: bool = False


# ----- Models -----
class SelectOption(WireModel):
    label: str
    value: str


class NumberOptions(WireModel):
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None


class ParameterSchema(WireModel):
    type: Literal["select", "number", "text", "seed", "comfyWorkflow"]
    label: str
    variable: str
    help_text: Optional[str] = None
    default_value: Optional[Any] = None
    placeholder: Optional[str] = None
    select_options: Optional[List[SelectOption]] = None
    number_options: Optional[NumberOptions] = None
    comfy_workflow_options: Optional[Dict[str, Any]] = None


class ModelRecord(WireModel):
    name: str
    provider: str
    capability: Capability
    size: Optional[int] = None
    parameter_size: Optional[str] = None
    quantization: Optional[str] = None
    parameters: Optional[List[ParameterSchema]] = None
    status_hint: Optional[str] = None


class SyncModelEntry(WireModel):
    name: str
    provider: str
    type: str
    parameters: Optional[List[ParameterSchema]] = None

    @classmethod
    def from_record(cls, record: ModelRecord) -> "SyncModelEntry":
        return cls(
            name=record.name,
            provider=record.provider,
            type=KIND_TO_MODEL_TYPE[record.capability],
            parameters=record.parameters,
        )


# ----- Progress & Results -----
class ProgressEvent(BaseModel):
    step: int
    total_steps: int
    stage: Optional[str] = None  # backend node id / stage label
    preview: Optional[str] = None


class JobResult(BaseModel):
    success: bool
    content: Optional[str] = None
    artifact_base64: Optional[str] = None
    mime_type: Optional[str] = None
    seed: Optional[int] = None
    duration_seconds: Optional[float] = None
    fps: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def text(cls, content: str) -> "JobResult":
        return cls(success=True, content=content)

    @classmethod
    def artifact(
        cls,
        data: bytes,
        mime_type: str,
        seed: Optional[int] = None,
        duration_seconds: Optional[float] = None,
        fps: Optional[int] = None,
    ) -> "JobResult":
        return cls(
            success=True,
            artifact_base64=base64.b64encode(data).decode("ascii"),
            mime_type=mime_type,
            seed=seed,
            duration_seconds=duration_seconds,
            fps=fps,
        )

    @classmethod
    def failed(cls, kind: str, message: str) -> "JobResult":
        return cls(success=False, error=message, error_kind=kind)

    def to_wire(self, kind: Optional[str]) -> Optional[Dict[str, Any]]:
        """Shape the ``result`` body the queue expects for this capability."""
        if not self.success:
            return None
        if kind == "text":
            return {
                "content": self.content or "",
                "usage": {"promptTokens": 0, "completionTokens": 0},
            }
        if kind == "video":
            return {
                "videoBase64": self.artifact_base64,
                "mimeType": self.mime_type,
                "duration": self.duration_seconds,
                "fps": self.fps,
                "seed": self.seed,
            }
        return {
            "imageBase64": self.artifact_base64,
            "mimeType": self.mime_type,
            "seed": self.seed,
        }
