"""Codex CLI: `codex exec --json ... -` reads the prompt from stdin, emits JSONL.

Events nest the payload under "msg":
    {"id":"0","msg":{"type":"agent_reasoning","text":"..."}}
    {"id":"0","msg":{"type":"agent_message","message":"..."}}
    {"id":"0","msg":{"type":"message_output_text","text":"..."}}
    {"id":"0","msg":{"type":"task_complete","last_agent_message":"..."}}
"""

from ultraplan.agents.base import InvocationTemplate, ParsedOutput, iter_json_events, plain_text_fallback


def parse_jsonl(raw: str) -> ParsedOutput:
    text_parts: list[str] = []
    last_agent_message = ""

    for event in iter_json_events(raw):
        msg = event.get("msg")
        if not isinstance(msg, dict):
            continue
        msg_type = msg.get("type")
        if msg_type == "agent_message" and msg.get("message"):
            text_parts.append(str(msg["message"]))
        elif msg_type == "message_output_text" and msg.get("text"):
            text_parts.append(str(msg["text"]))
        elif msg_type == "task_complete" and msg.get("last_agent_message"):
            last_agent_message = str(msg["last_agent_message"])

    if text_parts:
        return ParsedOutput("".join(text_parts).strip(), "stream")
    if last_agent_message.strip():
        return ParsedOutput(last_agent_message.strip(), "final")
    return plain_text_fallback(raw)


TEMPLATE = InvocationTemplate(
    name="codex",
    executable="codex",
    args=("exec", "--json", "--full-auto", "--skip-git-repo-check", "-"),
    output_format="jsonl",
    parser=parse_jsonl,
    content_markers=(
        '"type":"agent_message"',
        '"type":"message_output_text"',
        '"type":"task_complete"',
    ),
)
