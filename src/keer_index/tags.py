"""Inline #tag recognizer for markdown-it-py."""

import unicodedata

from markdown_it import MarkdownIt
from markdown_it.rules_inline import StateInline

TAG_TRIGGER = "#"
MAX_TAG_CHARS = 100  # code points, longer bodies are truncated

# Punctuation allowed in a tag body on top of letters, numbers and symbols
TAG_PUNCTUATION = frozenset("_-/&")


def is_valid_tag_char(ch: str) -> bool:
    """Letters, numbers, symbols (incl. emoji) and `_ - / &`."""
    if ch in TAG_PUNCTUATION:
        return True
    return unicodedata.category(ch)[0] in ("L", "N", "S")


def is_escaped(text: str, index: int) -> bool:
    """True if text[index] follows an odd run of backslashes."""
    backslashes = 0
    while index - backslashes - 1 >= 0 and text[index - backslashes - 1] == "\\":
        backslashes += 1
    return backslashes % 2 == 1


def scan_tag(text: str, start: int, stop: int | None = None) -> int:
    """Return the end index of a tag starting at `start`, or -1 if there is none.

    The tag body is text[start + 1:end]. `##x` and `# x` are rejected so that
    heading-like text never turns into a tag; this holds for every `#` in a
    run, not just the first. An escaped `\\#` is literal text and does not
    count as part of a run. Nothing at or after `stop` is read.
    """
    if stop is None:
        stop = len(text)
    if start >= stop or text[start] != TAG_TRIGGER:
        return -1
    if start > 0 and text[start - 1] == TAG_TRIGGER and not is_escaped(text, start - 1):
        return -1
    if start + 1 >= stop:
        return -1
    if text[start + 1] in (TAG_TRIGGER, " "):
        return -1

    pos = start + 1
    limit = min(stop, pos + MAX_TAG_CHARS)
    while pos < limit and is_valid_tag_char(text[pos]):
        pos += 1

    if pos == start + 1:
        return -1
    return pos


def in_bare_url(state: StateInline, pos: int) -> bool:
    """True if the `#` at `pos` belongs to a URL that linkify will turn into a link."""
    if not state.md.options.linkify:
        return False
    src = state.src
    word_start = pos
    while word_start > 0 and not src[word_start - 1].isspace():
        word_start -= 1
    word_end = pos
    while word_end < state.posMax and not src[word_end].isspace():
        word_end += 1

    offset = pos - word_start
    for match in state.md.linkify.match(src[word_start:word_end]) or ():
        if match.index <= offset < match.last_index:
            return True
    return False


def tag_rule(state: StateInline, silent: bool) -> bool:
    end = scan_tag(state.src, state.pos, state.posMax)
    if end < 0 or in_bare_url(state, state.pos):
        return False

    if not silent:
        body = state.src[state.pos + 1 : end]
        token = state.push("tag", "", 0)
        token.content = body
        token.markup = TAG_TRIGGER
        token.meta = {"tag": body}

    state.pos = end
    return True


def tag_plugin(md: MarkdownIt) -> None:
    """Append the tag rule to the inline ruler, after all built-in rules."""
    md.inline.ruler.push("tag", tag_rule)
