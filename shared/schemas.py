from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Capability = Literal["text", "image", "video"]
RequestType = Literal["llm_chat", "image_generation", "video_generation"]

# Short names accepted from older control-plane builds
REQUEST_TYPE_ALIASES: Dict[str, str] = {
    "chat": "llm_chat",
    "image": "image_generation",
    "video": "video_generation",
}

CAPABILITY_FOR_REQUEST_TYPE: Dict[str, Capability] = {
    "llm_chat": "text",
    "image_generation": "image",
    "video_generation": "video",
}

MODEL_TYPE_FOR_CAPABILITY: Dict[str, RequestType] = {
    "text": "llm_chat",
    "image": "image_generation",
    "video": "video_generation",
}


class WireModel(BaseModel):
    """Base for models exchanged with the control plane (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ----- Requests -----
class ChatMessage(WireModel):
    role: str = "user"
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _null_content(cls, value: Any) -> Any:
        return "" if value is None else value


class RequestPayload(WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    messages: Optional[List[ChatMessage]] = None
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def _null_config(cls, value: Any) -> Any:
        return {} if value is None else value


class GenerationRequest(WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    model_id: str = Field(alias="modelId")
    request_type: str = Field(alias="requestType")
    payload: RequestPayload = Field(default_factory=RequestPayload)
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    created_at: Optional[int] = Field(default=None, alias="createdAt")

    @field_validator("request_type", mode="before")
    @classmethod
    def _normalize_request_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return REQUEST_TYPE_ALIASES.get(value, value)
        return value

    @field_validator("payload", mode="before")
    @classmethod
    def _null_payload(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def capability(self) -> Optional[Capability]:
        return CAPABILITY_FOR_REQUEST_TYPE.get(self.request_type)


# ----- Provider-side types -----
@dataclass
class ChatChunk:
    """One element of a chat stream. The last element always has done=True."""
    content: str
    done: bool = False


@dataclass
class GenerationProgress:
    step: int
    total_steps: int
    current_node: Optional[str] = None
    preview: Optional[str] = None


class LocalModel(WireModel):
    name: str
    provider: str
    capability: Capability = "text"
    size: Optional[int] = None
    parameter_size: Optional[str] = Field(default=None, alias="parameterSize")
    quantization: Optional[str] = None
    parameters: Optional[List[Dict[str, Any]]] = None
    status_hint: Optional[str] = Field(default=None, alias="statusHint")


class ProviderStatus(BaseModel):
    name: str
    display_name: str
    running: bool


# ----- Results -----
class Usage(WireModel):
    prompt_tokens: int = Field(default=0, alias="promptTokens")
    completion_tokens: int = Field(default=0, alias="completionTokens")


class TextResult(WireModel):
    content: str = ""
    usage: Usage = Field(default_factory=Usage)


class ImageResult(BaseModel):
    image_bytes: bytes
    mime_type: str = "image/png"
    seed: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "imageBase64": base64.b64encode(self.image_bytes).decode("ascii"),
            "mimeType": self.mime_type,
        }
        if self.seed is not None:
            out["seed"] = self.seed
        return out


class VideoResult(BaseModel):
    video_bytes: bytes
    mime_type: str = "video/mp4"
    duration_seconds: Optional[float] = None
    fps: Optional[float] = None
    seed: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "videoBase64": base64.b64encode(self.video_bytes).decode("ascii"),
            "mimeType": self.mime_type,
        }
        if self.duration_seconds is not None:
            out["duration"] = self.duration_seconds
        if self.fps is not None:
            out["fps"] = self.fps
        if self.seed is not None:
            out["seed"] = self.seed
        return out


class ResultReport(BaseModel):
    """Terminal report for one request: a result on success, an error otherwise."""
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _exclusive(self) -> "ResultReport":
        if self.success and self.error:
            raise ValueError("a successful report cannot carry an error")
        if not self.success and self.result is not None:
            raise ValueError("a failed report cannot carry a result")
        if not self.success and not self.error:
            raise ValueError("a failed report needs an error message")
        return self


# ----- Control-plane registration -----
class SyncModelEntry(WireModel):
    name: str
    provider: str
    type: RequestType
    parameters: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_local_model(cls, model: LocalModel) -> "SyncModelEntry":
        return cls(
            name=model.name,
            provider=model.provider,
            type=MODEL_TYPE_FOR_CAPABILITY[model.capability],
            parameters=model.parameters,
        )


class SyncedModel(BaseModel):
    id: str
    name: str
