"""Quality gate for parsed agent output."""

import re

MIN_OUTPUT_CHARS = 20
MIN_TEXT_RATIO = 0.5

# \w already covers letters and digits of every script, CJK ideographs included.
_NON_TEXT = re.compile(
    r"[^\w\s\u3000-\u303f\uff00-\uffef"
    r".,;:!?，。；：！？、·\-—()（）\[\]【】{}\"'`“”‘’]"
)


def text_ratio(clean: str) -> float:
    """Fraction of characters that look like prose (1.0 for empty input)."""
    if not clean:
        return 1.0
    return 1 - len(_NON_TEXT.findall(clean)) / len(clean)


def validate_output(participant: str, clean: str, phase: str) -> str | None:
    """Return None when the output is usable, otherwise a failure reason."""
    prefix = f"{participant} {phase}"
    if not clean:
        return f"{prefix}: empty output (0 chars)"
    if len(clean) < MIN_OUTPUT_CHARS:
        return f"{prefix}: suspiciously short output ({len(clean)} chars)"
    ratio = text_ratio(clean)
    if ratio < MIN_TEXT_RATIO:
        return f"{prefix}: high ratio of non-text characters ({ratio * 100:.0f}% text)"
    return None
