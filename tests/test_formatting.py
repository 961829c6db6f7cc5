import pytest

from sessionchat.formatting import ensure_code_fences, looks_like_code


def test_plain_prose_is_untouched() -> None:
    text = "Paris is the capital of France.\nIt sits on the Seine."
    assert ensure_code_fences(text) == text


@pytest.mark.parametrize(
    "text",
    [
        "int main() {\nreturn 0\n}",
        "x = 1;",
        "def f():\n    return 1",
        "import os",
        "export default foo",
        "function add(a, b) return a + b",
        "class Foo extends Bar",
    ],
)
def test_code_like_text_is_wrapped(text: str) -> None:
    assert looks_like_code(text)
    assert ensure_code_fences(text) == f"```txt\n{text}\n```"


def test_already_fenced_text_is_unchanged() -> None:
    text = "Here you go:\n\n```py\nimport os\n    print(os.getcwd())\n```"
    assert ensure_code_fences(text) == text


def test_wrapping_is_idempotent() -> None:
    text = "const x = 1;\n  y();"
    once = ensure_code_fences(text)
    assert ensure_code_fences(once) == once


def test_keyword_needs_trailing_whitespace() -> None:
    assert ensure_code_fences("classification") == "classification"


def test_custom_language_tag() -> None:
    assert ensure_code_fences("a;", lang="js") == "```js\na;\n```"
