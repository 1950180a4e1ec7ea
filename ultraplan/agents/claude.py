"""Claude Code CLI: stdin prompt, `--output-format stream-json` events.

Event shapes:
    {"type":"system","subtype":"init","session_id":"...","model":"..."}
    {"type":"assistant","message":{"content":[{"type":"thinking","thinking":"..."}]}}
    {"type":"assistant","message":{"content":[{"type":"text","text":"..."}]}}
    {"type":"result","subtype":"success","result":"...","usage":{...}}
"""

import logging

from ultraplan.agents.base import InvocationTemplate, ParsedOutput, iter_json_events, plain_text_fallback

logger = logging.getLogger(__name__)


def parse_stream_json(raw: str) -> ParsedOutput:
    text_parts: list[str] = []
    thinking_parts: list[str] = []
    final_result = ""

    for event in iter_json_events(raw):
        event_type = event.get("type")
        if event_type == "assistant":
            message = event.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if not isinstance(content, list):
                continue
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    text_parts.append(str(block["text"]))
                elif block.get("type") == "thinking" and block.get("thinking"):
                    thinking_parts.append(str(block["thinking"]))
        elif event_type == "result" and isinstance(event.get("result"), str):
            final_result = event["result"]

    if text_parts:
        return ParsedOutput("\n".join(text_parts).strip(), "stream")
    if final_result.strip():
        return ParsedOutput(final_result.strip(), "final")
    if thinking_parts:
        # Killed mid-thought, before any answer text was emitted.
        logger.warning(
            "No text blocks found, falling back to thinking content (%d blocks)",
            len(thinking_parts),
        )
        return ParsedOutput("\n".join(thinking_parts).strip(), "thinking")
    return plain_text_fallback(raw)


TEMPLATE = InvocationTemplate(
    name="claude",
    executable="claude",
    args=("--dangerously-skip-permissions", "--verbose", "--output-format", "stream-json"),
    output_format="stream-json",
    parser=parse_stream_json,
    # Thinking blocks must not arm the idle timer, only real text blocks.
    content_markers=('"type":"text","text"', '"type": "text", "text"'),
    model_flag="--model",
)
