"""
Tokenizer wrappers - Simple encoding/decoding operations

Responsibilities:
- Tokenize text to token IDs
- Detokenize token IDs to text
- Render chat messages into a single prompt
"""

from typing import TYPE_CHECKING, List, Sequence

from edge_serving.errors import TokenizationError
from edge_serving.schemas import ChatMessage

if TYPE_CHECKING:
    from edge_serving.model_cache import ModelHandle

ROLE_HEADERS = {
    "system": "### System:\n",
    "user": "### Human:\n",
    "assistant": "### Assistant:\n",
}
ASSISTANT_PROMPT = ROLE_HEADERS["assistant"]


def tokenize(handle: "ModelHandle", text: str, add_bos: bool = True) -> List[int]:
    """
    Tokenize text using the model's vocabulary

    Args:
        handle: Ready ModelHandle
        text: Input text to tokenize
        add_bos: Whether to prepend the BOS token

    Returns:
        Token IDs

    Raises:
        TokenizationError: If tokenization fails
    """
    try:
        return list(handle.backend.tokenize(text, add_bos=add_bos))
    except Exception as exc:
        raise TokenizationError(handle.model_id, f"encode failed: {exc}") from exc


def detokenize(handle: "ModelHandle", token_ids: Sequence[int]) -> str:
    """
    Detokenize token IDs to text

    Raises:
        TokenizationError: If detokenization fails
    """
    try:
        return handle.backend.detokenize(list(token_ids))
    except Exception as exc:
        raise TokenizationError(handle.model_id, f"decode failed: {exc}") from exc


def count_tokens(handle: "ModelHandle", text: str) -> int:
    """Count tokens in text without special tokens (for diagnostics)"""
    return len(tokenize(handle, text, add_bos=False))


def format_messages(messages: Sequence[ChatMessage]) -> str:
    """
    Render chat messages with the ### System / ### Human / ### Assistant template

    The result always ends with an open assistant turn.

    Raises:
        ValueError: If a message has an unknown role
    """
    parts = []
    for message in messages:
        header = ROLE_HEADERS.get(message.role)
        if header is None:
            raise ValueError(f"Unknown chat role: {message.role!r}")
        parts.append(f"{header}{message.content}\n\n")
    parts.append(ASSISTANT_PROMPT)
    return "".join(parts)
