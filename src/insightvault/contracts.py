"""Pydantic contracts for InsightVault requests, responses and results.

The wire format uses camelCase keys (``datasetId``, ``chartData``, ``xKey``)
while Python code uses snake_case attributes. Models accept either form on
input and serialize by alias.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    """One prior conversation turn."""

    role: Literal["user", "assistant", "system"] = Field(..., description="Speaker role")
    content: str = Field(..., description="Turn text")


class ChartData(BaseModel):
    """Chart payload rendered by the client next to an answer."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["bar", "line", "pie", "scatter"] = Field(..., description="Chart kind")
    title: str = Field(..., description="Chart title")
    x_key: str = Field(..., alias="xKey", description="Key of the x value in each data row")
    y_key: str = Field(..., alias="yKey", description="Key of the y value in each data row")
    data: list[dict[str, str | float | int]] = Field(default_factory=list)


class QueryResult(BaseModel):
    """Result of one structural operation or fallback answer.

    Attributes:
        answer: Formatted text, leading with the finding
        context: Opaque diagnostic string for downstream synthesis
        chart_data: Optional chart payload
        sources: Cited raw snippets (empty for structural operations)
    """

    model_config = ConfigDict(populate_by_name=True)

    answer: str
    context: str | None = None
    chart_data: ChartData | None = Field(None, alias="chartData")
    sources: list[str] = Field(default_factory=list)


class AskRequest(BaseModel):
    """Request to answer a question about a dataset."""

    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., min_length=1, description="Natural language question")
    dataset_id: str = Field(..., min_length=1, alias="datasetId", description="Dataset identifier")
    history: list[ChatMessage] = Field(default_factory=list, description="Prior turns")

    @field_validator("question", "dataset_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject whitespace-only values."""
        trimmed = v.strip()
        if not trimmed:
            raise ValueError("Value cannot be blank")
        return trimmed


class AskResponse(BaseModel):
    """Response returned to the caller."""

    model_config = ConfigDict(populate_by_name=True)

    answer: str
    context: str | None = None
    sources: list[str] = Field(default_factory=list)
    chart_data: ChartData | None = Field(None, alias="chartData")

    @classmethod
    def from_result(cls, result: QueryResult) -> "AskResponse":
        return cls(
            answer=result.answer,
            context=result.context,
            sources=list(result.sources),
            chart_data=result.chart_data,
        )


class Snippet(BaseModel):
    """A ranked snippet returned by similarity search."""

    content: str
    similarity: float = 0.0
    page_number: int | None = None


class UpstreamError(Exception):
    """Raised when a collaborator (row store, embedder, generator) fails."""

    def __init__(self, message: str, collaborator: str):
        super().__init__(message)
        self.collaborator = collaborator
