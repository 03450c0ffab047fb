"""
Wire envelopes exchanged across the context boundary.

Only plain JSON-compatible dictionaries cross between contexts. These pydantic
models validate them on both ends and form a tagged union on ``type``.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from slopedin.errors import ClassificationError, error_for_kind
from slopedin.protocols import ClassificationResult, Label, RankedLabel


class RankedLabelModel(BaseModel):
    label: str
    score: float


class ClassifyRequest(BaseModel):
    """Discovery -> inference."""

    target: str = "inference"
    type: Literal["classify"] = "classify"
    correlation_id: str
    text: str


class ClassifyResponse(BaseModel):
    """Inference -> discovery, success."""

    type: Literal["result"] = "result"
    correlation_id: str
    label: Literal["AI", "Human"]
    score: float = Field(ge=0.0, le=1.0)
    raw_ranking: List[RankedLabelModel] = Field(default_factory=list)

    @classmethod
    def from_result(cls, correlation_id: str, result: ClassificationResult) -> ClassifyResponse:
        return cls(
            correlation_id=correlation_id,
            label=result.label.value,
            score=result.score,
            raw_ranking=[RankedLabelModel(label=r.label, score=r.score) for r in result.raw_ranking],
        )

    def to_result(self) -> ClassificationResult:
        return ClassificationResult(
            label=Label(self.label),
            score=self.score,
            raw_ranking=tuple(RankedLabel(label=r.label, score=r.score) for r in self.raw_ranking),
        )


class ErrorResponse(BaseModel):
    """Inference -> discovery, failure."""

    type: Literal["error"] = "error"
    correlation_id: str
    error: str
    kind: str = "inference_failed"

    @classmethod
    def from_exception(cls, correlation_id: str, exc: BaseException) -> ErrorResponse:
        kind = exc.kind if isinstance(exc, ClassificationError) else "inference_failed"
        return cls(correlation_id=correlation_id, error=str(exc) or type(exc).__name__, kind=kind)

    def to_exception(self) -> ClassificationError:
        return error_for_kind(self.kind, self.error)


ResponseMessage = Annotated[Union[ClassifyResponse, ErrorResponse], Field(discriminator="type")]

_response_adapter: TypeAdapter[Union[ClassifyResponse, ErrorResponse]] = TypeAdapter(ResponseMessage)


def parse_request(payload: Dict[str, Any]) -> ClassifyRequest:
    return ClassifyRequest.model_validate(payload)


def parse_response(payload: Dict[str, Any]) -> Union[ClassifyResponse, ErrorResponse]:
    return _response_adapter.validate_python(payload)
