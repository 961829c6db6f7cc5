import re

FENCE = "```"

# Crude signals that a reply is raw code: a line ending in a brace or
# semicolon, an indented line, or a declaration keyword.
_CODE_LINE = re.compile(r"[{;]\s*$|^\s{2,}", re.MULTILINE)
_CODE_KEYWORD = re.compile(r"(import|export|function|class)\s")


def looks_like_code(text: str) -> bool:
    return bool(_CODE_LINE.search(text) or _CODE_KEYWORD.search(text))


def ensure_code_fences(text: str, lang: str = "txt") -> str:
    """Wrap ``text`` in a single fenced block if it looks like unfenced code.

    Text that already contains a fence is returned unchanged, which makes the
    function idempotent.
    """
    if FENCE in text:
        return text
    if not looks_like_code(text):
        return text
    return f"{FENCE}{lang}\n{text}\n{FENCE}"
