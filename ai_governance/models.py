"""Message, chunk, and API models for the AI governance core."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class ImageSource(BaseModel):
    """Inline base64 image payload."""

    type: Literal["base64"] = "base64"
    media_type: str = "image/png"
    data: str


class MessageContent(BaseModel):
    """One part of a multi-part message (text or image)."""

    type: Literal["text", "image"]
    text: Optional[str] = None
    source: Optional[ImageSource] = None


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: Literal["user", "assistant", "system"]
    content: Union[str, List[MessageContent]]

    def text(self) -> str:
        """Plain-text view of the message; image parts are skipped."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(part.text or "" for part in self.content if part.type == "text")


def messages_text(messages: List[ChatMessage]) -> str:
    """Combine all message text, used for fingerprinting and token estimates."""
    return "\n".join(m.text() for m in messages)


class DispatchConfig(BaseModel):
    """Which model to call and how; the gateway may substitute provider/model."""

    provider: str = ""
    model: str = Field(..., min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)


class StreamChunk(BaseModel):
    """Uniform chunk envelope yielded by every streaming path.

    Exactly one of ``content``, ``error``, or ``done`` is meaningful per
    chunk; a stream always ends with a single ``done`` chunk.
    """

    content: Optional[str] = None
    error: Optional[str] = None
    done: bool = False

    @property
    def is_error(self) -> bool:
        return self.error is not None


class PolicyFields(BaseModel):
    """Sensitivity fields shared by API requests that go through policy."""

    case_sensitivity: Optional[str] = Field(
        default=None,
        description="privileged, sealed, pii_heavy, confidential, or standard",
    )
    payload_classification: Optional[str] = Field(
        default=None, description="raw, derived, sanitized, or public"
    )
    redaction_status: Optional[str] = Field(
        default=None, description="not_run, passed, or failed"
    )
    user_id: Optional[str] = None
    matter_id: Optional[str] = None


class ChatRequest(PolicyFields):
    """Incoming chat request."""

    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = Field(
        default=None, description="Model id; defaults to the selected model"
    )
    stream: bool = True
    caller: str = "api_chat"
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class VisionRequest(PolicyFields):
    """Incoming single-image analysis request."""

    image_base64: str = Field(..., min_length=1)
    media_type: str = "image/png"
    prompt: str = Field(..., min_length=1)
    model: Optional[str] = None
    caller: str = "api_vision"
    max_tokens: Optional[int] = Field(default=None, gt=0)


class EvidenceRequest(PolicyFields):
    """Evidence image analysis request."""

    image_base64: str = Field(..., min_length=1)
    media_type: str = Field(..., min_length=1)
    evidence_type: Optional[str] = Field(
        default=None, description="document, crime_scene, photo, or diagram"
    )
    model: Optional[str] = None
    caller: str = "api_evidence"


class OcrRequest(PolicyFields):
    """Document OCR request."""

    image_base64: str = Field(..., min_length=1)
    media_type: str = Field(..., min_length=1)
    model: Optional[str] = None
    caller: str = "api_ocr"


class EvaluateRequest(PolicyFields):
    """Dry-run policy evaluation request."""

    model_id: str = Field(..., min_length=1)


class ModeRequest(BaseModel):
    mode: Literal["online", "restricted_offline"]


class SelectModelRequest(BaseModel):
    model_id: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    """Non-streaming chat response envelope."""

    model: str
    provider: str
    content: str
    policy: Dict[str, Any]


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
    policy: Optional[Dict[str, Any]] = None
