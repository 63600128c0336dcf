# bounded_rag/streaming/__init__.py
from bounded_rag.streaming.decoder import (
    CHAT_RESPONSE_SCHEMA,
    CLOSING_PATTERN,
    DecoderState,
    StreamingAnswerDecoder,
    assert_answer_precedes_sources,
)
from bounded_rag.streaming.latex import (
    decode_json_escapes,
    extract_latex,
    protect_answer_text,
    rehydrate_latex,
    unescape_json_string,
)

__all__ = [
    "CHAT_RESPONSE_SCHEMA",
    "CLOSING_PATTERN",
    "DecoderState",
    "StreamingAnswerDecoder",
    "assert_answer_precedes_sources",
    "decode_json_escapes",
    "extract_latex",
    "protect_answer_text",
    "rehydrate_latex",
    "unescape_json_string",
]
