import re
from html import escape, unescape
from typing import List, Optional

from .config import ESCAPE_HTML

_UNSAFE_URL_RE = re.compile(r"^(javascript|vbscript):", re.IGNORECASE)
# Browsers drop these before reading the scheme.
_URL_LEADING_RE = re.compile(r"^[\x00-\x20]+")
_URL_STRIPPED_RE = re.compile(r"[\t\n\r]")

_H3_RE = re.compile(r"^### (.*)$", re.MULTILINE)
_H2_RE = re.compile(r"^## (.*)$", re.MULTILINE)
_H1_RE = re.compile(r"^# (.*)$", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_ITALIC_RE = re.compile(r"\*(.*?)\*")
_FENCED_CODE_RE = re.compile(r"```([\s\S]*?)```")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
# An image is a link with a leading "!"; leave those for the image rule.
_LINK_RE = re.compile(r"(?<!!)\[([^\]]+)\]\(([^)]+)\)")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
_TABLE_RE = re.compile(r"^\|(.+)\|\n\|([-:\s|]+)\|\n((?:\|.*\|\n)*)", re.MULTILINE)
_NEWLINE_RE = re.compile(r"\n")


def _safe_url(url: str) -> str:
    scheme_text = _URL_STRIPPED_RE.sub("", _URL_LEADING_RE.sub("", unescape(url)))
    if _UNSAFE_URL_RE.match(scheme_text):
        return "#"
    return url


def _link(match: re.Match) -> str:
    text, url = match.group(1), _safe_url(match.group(2))
    return f'<a href="{url}" target="_blank" rel="noopener noreferrer" class="md-link">{text}</a>'


def _image(match: re.Match) -> str:
    alt, url = match.group(1), _safe_url(match.group(2))
    return f'<img src="{url}" alt="{alt}" class="md-img" />'


def _split_cells(line: str) -> List[str]:
    line = line.strip()
    if line.startswith("|"):
        line = line[1:]
    if line.endswith("|"):
        line = line[:-1]
    return [cell.strip() for cell in line.split("|")]


def render_table(header: str, rows: str) -> str:
    headers = "".join(f'<th class="md-cell">{cell}</th>' for cell in _split_cells(header))
    body = []
    for row in rows.strip().split("\n"):
        if not row.strip():
            continue
        cells = "".join(f'<td class="md-cell">{cell}</td>' for cell in _split_cells(row))
        body.append(f"<tr>{cells}</tr>")
    return (
        '<table class="md-table">'
        f"<thead><tr>{headers}</tr></thead>"
        f"<tbody>{''.join(body)}</tbody>"
        "</table>"
    )


def _table(match: re.Match) -> str:
    return render_table(match.group(1), match.group(3))


# Order matters: each rule sees the output of the rules before it. Links run
# before images, so _LINK_RE skips "![" to let image syntax reach _IMAGE_RE.
_RULES = (
    (_H3_RE, r'<h3 class="md-heading md-h3">\1</h3>'),
    (_H2_RE, r'<h2 class="md-heading md-h2">\1</h2>'),
    (_H1_RE, r'<h1 class="md-heading md-h1">\1</h1>'),
    (_BOLD_RE, r"<strong>\1</strong>"),
    (_ITALIC_RE, r"<em>\1</em>"),
    (_FENCED_CODE_RE, r'<pre class="md-pre"><code>\1</code></pre>'),
    (_INLINE_CODE_RE, r'<code class="md-code">\1</code>'),
    (_LINK_RE, _link),
    (_IMAGE_RE, _image),
    (_TABLE_RE, _table),
    (_NEWLINE_RE, "<br>"),
)


def format_message(text: Optional[str], escape_html: Optional[bool] = None) -> str:
    """Render the supported markdown subset of ``text`` as an HTML fragment.

    With ``escape_html`` (the configured default) the raw text is escaped first,
    so HTML typed by the user or produced by the model is shown, not rendered.
    """
    if not text:
        return ""
    if escape_html is None:
        escape_html = ESCAPE_HTML
    text = text.replace("\r\n", "\n")
    if escape_html:
        text = escape(text, quote=True)
    for pattern, replacement in _RULES:
        text = pattern.sub(replacement, text)
    return text
