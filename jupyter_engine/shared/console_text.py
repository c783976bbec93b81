"""
Normalization of kernel stream output before it is shown as a status line.

Kernel stdout is written for a terminal: progress bars rewrite the current line with
carriage returns and backspaces, and colors come as ANSI escape sequences. Status
messages are rendered as HTML, so the text is flattened, escaped and auto-linked.
"""
import html
import re

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
URL_PATTERN = re.compile(r"(https?://[^\s<>\"']+)")
_BACKSPACE = re.compile(r"[^\n]\x08")


def fix_backspace(text: str) -> str:
    while True:
        fixed = _BACKSPACE.sub("", text)
        if len(fixed) == len(text):
            return fixed
        text = fixed


def fix_carriage_return(text: str) -> str:
    text = re.sub(r"\r+\n", "\n", text)
    lines = []
    for line in text.split("\n"):
        rendered = ""
        for segment in line.split("\r"):
            rendered = segment + rendered[len(segment):]
        lines.append(rendered)
    return "\n".join(lines)


def fix_overwritten_chars(text: str) -> str:
    """Apply backspaces and carriage returns the way a terminal would."""
    return fix_carriage_return(fix_backspace(text))


def fix_console(text: str) -> str:
    """Strip ANSI escape codes and escape HTML specials."""
    return html.escape(ANSI_ESCAPE.sub("", text), quote=False)


def auto_link_urls(text: str) -> str:
    return URL_PATTERN.sub(r'<a href="\1" target="_blank">\1</a>', text)


def normalize_stream_text(text: str) -> str:
    return auto_link_urls(fix_console(fix_overwritten_chars(text)))
