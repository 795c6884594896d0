import typing as t

from batchkeeper.models import BatchRequestLine, Category, ChatBody, ChatMessage, Sentiment
from batchkeeper.status import ProcessingType

if t.TYPE_CHECKING:
    from batchkeeper.db.models import ProcessingRequest, SessionMessage

CHAT_COMPLETIONS_ENDPOINT = "/v1/chat/completions"
TEMPERATURE = 0.1
MAX_TOKENS = 1000

_SENTIMENTS = "|".join(Sentiment)
_CATEGORIES = "|".join(Category)

SYSTEM_PROMPTS: dict[ProcessingType, str] = {
    ProcessingType.SENTIMENT_ANALYSIS: (
        "Determine the overall sentiment of the conversation below. "
        f'Reply with a JSON object only: {{"sentiment": "{_SENTIMENTS}"}}'
    ),
    ProcessingType.CATEGORIZATION: (
        "Assign the conversation below to exactly one category. "
        f'Reply with a JSON object only: {{"category": "{_CATEGORIES}"}}'
    ),
    ProcessingType.SUMMARY: (
        "Summarize the conversation below in one or two sentences. "
        'Reply with a JSON object only: {"summary": "<summary>"}'
    ),
    ProcessingType.FULL_ANALYSIS: (
        "Analyze the conversation below. Reply with a JSON object only:\n"
        "{\n"
        f'  "sentiment": "{_SENTIMENTS}",\n'
        f'  "category": "{_CATEGORIES}",\n'
        '  "summary": "<one or two sentence summary>",\n'
        '  "language": "<ISO 639-1 code of the conversation, e.g. en, de, fr>"\n'
        "}"
    ),
}


def system_prompt_for(processing_type: str) -> str:
    try:
        return SYSTEM_PROMPTS[ProcessingType(processing_type)]
    except ValueError:
        return SYSTEM_PROMPTS[ProcessingType.FULL_ANALYSIS]


def format_messages(messages: t.Iterable["SessionMessage"]) -> str:
    """Render a transcript as ``role: content`` lines in message order."""
    ordered = sorted(messages, key=lambda message: message.order)
    return "\n".join(f"{message.role}: {message.content}" for message in ordered)


def build_chat_body(request: "ProcessingRequest") -> ChatBody:
    """
    Build the chat completion body used for both batch lines and individual retries.

    Parameters
    ----------
    request : ProcessingRequest
        Request with its session and messages loaded.

    Returns
    -------
    ChatBody
        The completion body.
    """
    return ChatBody(
        model=request.model,
        messages=[
            ChatMessage(role="system", content=system_prompt_for(request.processing_type)),
            ChatMessage(role="user", content=format_messages(request.session.messages)),
        ],
        temperature=TEMPERATURE,
        max_tokens=MAX_TOKENS,
        response_format={"type": "json_object"},
    )


def build_batch_lines(requests: t.Iterable["ProcessingRequest"]) -> list[BatchRequestLine]:
    return [
        BatchRequestLine(
            custom_id=request.id,
            url=CHAT_COMPLETIONS_ENDPOINT,
            body=build_chat_body(request),
        )
        for request in requests
    ]
