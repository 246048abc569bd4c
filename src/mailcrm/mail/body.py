"""Email body preparation for the decision prompt.

Bodies arrive as HTML or text. Before they reach Claude they are reduced to
the new content of the message: markup stripped, quoted replies and
forwarded headers cut off, whitespace collapsed, then truncated.

All regex operations use the `regex` library with a timeout so hostile
email content cannot stall a triage run.

Usage:
    from mailcrm.mail.body import prepare_body

    body = prepare_body(raw_html, is_html=True, max_length=4000)
"""

from __future__ import annotations

import html

import regex

from mailcrm.core.logging import get_logger

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0
TRUNCATION_MARKER = "\n[...truncated]"

SCRIPT_STYLE_PATTERN = regex.compile(
    r"<(script|style|head)[^>]*>.*?</\1\s*>", regex.IGNORECASE | regex.DOTALL
)
BLOCK_TAG_PATTERN = regex.compile(r"<\s*(br|/p|/div|/li|/tr|/h\d)\b[^>]*>", regex.IGNORECASE)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")

# Everything from the first match onwards is quoted history
QUOTED_HISTORY_PATTERNS = [
    regex.compile(r"^On .{1,200}? wrote:\s*$", regex.MULTILINE),
    regex.compile(
        r"^-{3,}\s*(Original|Forwarded) Message\s*-{3,}",
        regex.MULTILINE | regex.IGNORECASE,
    ),
    regex.compile(r"^From:\s+.+\n(Sent|Date):\s+.+\n", regex.MULTILINE),
]
QUOTED_LINE_PATTERN = regex.compile(r"^>.*$\n?", regex.MULTILINE)

EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
EXCESSIVE_SPACES = regex.compile(r"[ \t\u00a0]{2,}")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("body_regex_timeout", pattern=pattern.pattern[:50])
        return text


def _cut_quoted_history(text: str) -> str:
    cut = len(text)
    for pattern in QUOTED_HISTORY_PATTERNS:
        try:
            match = pattern.search(text, timeout=REGEX_TIMEOUT)
        except TimeoutError:
            logger.warning("body_regex_timeout", pattern=pattern.pattern[:50])
            continue
        # A quote marker on the very first line means there is no new content to keep.
        if match and 0 < match.start() < cut:
            cut = match.start()
    return text[:cut]


def html_to_text(text: str) -> str:
    text = _safe_sub(SCRIPT_STYLE_PATTERN, " ", text)
    text = _safe_sub(BLOCK_TAG_PATTERN, "\n", text)
    text = _safe_sub(HTML_TAG_PATTERN, " ", text)
    return html.unescape(text)


def prepare_body(text: str | None, is_html: bool = False, max_length: int = 4000) -> str:
    """Reduce a raw body to its new content, truncated to max_length.

    Args:
        text: Raw body (None is treated as empty)
        is_html: True if text is HTML
        max_length: Maximum length of the result, including the truncation marker

    Returns:
        Cleaned text
    """
    if not text:
        return ""

    if is_html:
        text = html_to_text(text)
    text = text.replace("\r\n", "\n")
    text = _cut_quoted_history(text)
    text = _safe_sub(QUOTED_LINE_PATTERN, "", text)
    text = _safe_sub(EXCESSIVE_SPACES, " ", text)
    text = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", text)
    text = text.strip()

    if len(text) > max_length:
        text = text[: max(0, max_length - len(TRUNCATION_MARKER))].rstrip() + TRUNCATION_MARKER
    return text
