"""Gemini CLI: stdin prompt, `--output-format stream-json` delta events."""

from ultraplan.agents.base import InvocationTemplate, ParsedOutput, iter_json_events, plain_text_fallback


def parse_stream_json(raw: str) -> ParsedOutput:
    text_parts: list[str] = []

    for event in iter_json_events(raw):
        if event.get("type") != "message" or event.get("role") != "assistant":
            continue
        content = event.get("content")
        if isinstance(content, str):
            text_parts.append(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, str):
                    text_parts.append(part)
                elif isinstance(part, dict) and part.get("text"):
                    text_parts.append(str(part["text"]))

    # Deltas: join without separator
    text = "".join(text_parts).strip()
    if text:
        return ParsedOutput(text, "stream")
    return plain_text_fallback(raw)


TEMPLATE = InvocationTemplate(
    name="gemini",
    executable="gemini",
    args=("--yolo", "--output-format", "stream-json"),
    output_format="stream-json",
    parser=parse_stream_json,
    # User echo carries "role":"user"; only assistant messages count.
    content_markers=('"role":"assistant"', '"role": "assistant"'),
)
