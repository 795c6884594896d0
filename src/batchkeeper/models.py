import typing as t
from enum import StrEnum

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from batchkeeper.exceptions import ResultLineError
from batchkeeper.status import ProcessingType


class ChatMessage(BaseModel):
    role: t.Literal["system", "user", "assistant"]
    content: str | None = None


class ChatBody(BaseModel):
    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    response_format: dict | None = None


class BatchRequestLine(BaseModel):
    custom_id: str
    method: t.Literal["POST"] = "POST"
    url: str = "/v1/chat/completions"
    body: ChatBody


class RequestCounts(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0


class ProviderBatch(BaseModel):
    """Provider view of a batch, as returned by create and poll calls."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    input_file_id: str | None = None
    output_file_id: str | None = None
    error_file_id: str | None = None
    request_counts: RequestCounts = Field(default_factory=RequestCounts)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Choice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class ChatCompletion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    model: str | None = None
    choices: list[Choice] = Field(min_length=1)
    usage: TokenUsage | None = None

    @property
    def content(self) -> str | None:
        return self.choices[0].message.content


class SuccessResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status_code: int = Field(ge=200, lt=300)
    request_id: str | None = None
    body: ChatCompletion


class LineError(BaseModel):
    code: str | None = None
    message: str


class SuccessLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: t.Literal["success"] = "success"
    custom_id: str
    response: SuccessResponse


class ErrorLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: t.Literal["error"] = "error"
    custom_id: str
    error: LineError

    @model_validator(mode="before")
    @classmethod
    def derive_error_from_response(cls, data: t.Any) -> t.Any:
        # a non-2xx response without an explicit error object still carries one in its body
        if not isinstance(data, dict) or data.get("error"):
            return data
        response = data.get("response") or {}
        if not isinstance(response, dict):
            raise ValueError("response must be an object")
        body = response.get("body")
        body_error = body.get("error") if isinstance(body, dict) else None
        if isinstance(body_error, dict) and body_error.get("message"):
            error = {"code": body_error.get("code"), "message": body_error["message"]}
        else:
            status_code = response.get("status_code")
            error = {
                "code": str(status_code) if status_code is not None else None,
                "message": f"Request failed with status {status_code}",
            }
        return {**data, "error": error}


def _result_line_kind(value: t.Any) -> str:
    if isinstance(value, BaseModel):
        return getattr(value, "kind", "error")
    if not isinstance(value, dict):
        return "error"
    if value.get("error"):
        return "error"
    response = value.get("response")
    if not isinstance(response, dict):
        return "error"
    status_code = response.get("status_code")
    if isinstance(status_code, int) and 200 <= status_code < 300:
        return "success"
    return "error"


ResultLine = t.Annotated[
    t.Annotated[SuccessLine, Tag("success")] | t.Annotated[ErrorLine, Tag("error")],
    Discriminator(_result_line_kind),
]

result_line_adapter: TypeAdapter[SuccessLine | ErrorLine] = TypeAdapter(ResultLine)


def parse_result_line(raw: str, *, line_number: int | None = None) -> SuccessLine | ErrorLine:
    """
    Parse one line of a batch output file.

    Parameters
    ----------
    raw : str
        The raw JSON line.
    line_number : int | None
        1-based position in the file, used for error reporting.

    Returns
    -------
    SuccessLine | ErrorLine
        The validated line.

    Raises
    ------
    ResultLineError
        If the line is not JSON or matches neither shape.
    """
    try:
        return result_line_adapter.validate_json(raw)
    except ValidationError as e:
        raise ResultLineError(
            f"Invalid result line: {e.error_count()} validation error(s)",
            line_number=line_number,
        ) from e


class Sentiment(StrEnum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"


class Category(StrEnum):
    SCHEDULE_HOURS = "SCHEDULE_HOURS"
    LEAVE_VACATION = "LEAVE_VACATION"
    SICK_LEAVE_RECOVERY = "SICK_LEAVE_RECOVERY"
    SALARY_COMPENSATION = "SALARY_COMPENSATION"
    CONTRACT_HOURS = "CONTRACT_HOURS"
    ONBOARDING = "ONBOARDING"
    OFFBOARDING = "OFFBOARDING"
    WORKWEAR_STAFF_PASS = "WORKWEAR_STAFF_PASS"
    TEAM_CONTACTS = "TEAM_CONTACTS"
    PERSONAL_QUESTIONS = "PERSONAL_QUESTIONS"
    ACCESS_LOGIN = "ACCESS_LOGIN"
    SOCIAL_QUESTIONS = "SOCIAL_QUESTIONS"
    UNRECOGNIZED_OTHER = "UNRECOGNIZED_OTHER"


class Analysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def session_updates(self) -> dict[str, str]:
        """Session analysis fields carried by this result."""
        return {key: str(value) for key, value in self.model_dump().items() if value is not None}


class SentimentAnalysis(Analysis):
    sentiment: Sentiment


class CategoryAnalysis(Analysis):
    category: Category


class SummaryAnalysis(Analysis):
    summary: str = Field(min_length=1)


class FullAnalysis(Analysis):
    sentiment: Sentiment
    category: Category
    summary: str = Field(min_length=1)
    language: str = Field(pattern=r"^[a-z]{2}$")


ANALYSIS_SCHEMAS: dict[ProcessingType, type[Analysis]] = {
    ProcessingType.SENTIMENT_ANALYSIS: SentimentAnalysis,
    ProcessingType.CATEGORIZATION: CategoryAnalysis,
    ProcessingType.SUMMARY: SummaryAnalysis,
    ProcessingType.FULL_ANALYSIS: FullAnalysis,
}


def validate_analysis(processing_type: str, content: str | None) -> Analysis:
    """
    Validate model output against the schema of a processing type.

    Parameters
    ----------
    processing_type : str
        One of the ``ProcessingType`` values.
    content : str | None
        Raw message content, expected to be a JSON object.

    Returns
    -------
    Analysis
        The validated analysis.

    Raises
    ------
    ResultLineError
        If the content is missing, is not JSON or does not match the schema.
    """
    if not content:
        raise ResultLineError("Empty completion content")
    try:
        schema = ANALYSIS_SCHEMAS[ProcessingType(processing_type)]
    except ValueError as e:
        raise ResultLineError(f"Unknown processing type: {processing_type}") from e
    try:
        return schema.model_validate_json(content)
    except ValidationError as e:
        raise ResultLineError(
            f"Completion does not match {processing_type} schema: {e.error_count()} error(s)"
        ) from e
