import re

from promomail.schemas.email import EmailVariant

_HTML_FENCE = re.compile(r"```html\s*([\s\S]*?)```", re.IGNORECASE)
_PLAIN_FENCE = re.compile(r"```\s*(<!DOCTYPE[\s\S]*?</html>)\s*```", re.IGNORECASE)
_DOCUMENT = re.compile(r"(<!DOCTYPE[\s\S]*</html>)", re.IGNORECASE)
_DOCUMENT_LAZY = re.compile(r"<!DOCTYPE html>[\s\S]*?</html>", re.IGNORECASE)

_EMAIL_SEPARATOR = re.compile(r"<!-- ?EMAIL_SEPARATOR ?-->", re.IGNORECASE)
_STYLE_COMMENT = re.compile(r"<!-- ?([\w\s]+?) ?-->")

MIN_EMAIL_CHARS = 100


def extract_html(text: str) -> str:
    """Pull the email document out of a free-form model response. Never raises."""
    text = text or ""
    for pattern in (_HTML_FENCE, _PLAIN_FENCE, _DOCUMENT):
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return text.strip()


def looks_like_html(text: str) -> bool:
    return bool(re.match(r"\s*(<!DOCTYPE|<html)", text or "", re.IGNORECASE))


def is_valid_html(text: str) -> bool:
    """Has at least one tag and either a DOCTYPE or an <html> element."""
    if not text:
        return False
    has_tags = re.search(r"<[a-z][\s\S]*>", text, re.IGNORECASE) is not None
    has_structure = re.search(r"<!DOCTYPE\s+html|<html", text, re.IGNORECASE) is not None
    return has_tags and has_structure


def _document_blocks(text: str) -> list[str]:
    """Each DOCTYPE...</html> span together with the text leading up to it."""
    blocks, start = [], 0
    for match in _DOCUMENT_LAZY.finditer(text):
        blocks.append(text[start:match.end()])
        start = match.end()
    return blocks


def split_emails(text: str) -> list[EmailVariant]:
    """Split a multi-email response into named variants."""
    text = text or ""
    blocks = []
    if _EMAIL_SEPARATOR.search(text):
        blocks = [block for block in _EMAIL_SEPARATOR.split(text) if "<!doctype html>" in block.lower()]
    if not blocks:
        blocks = _document_blocks(text)

    variants = []
    for index, block in enumerate(blocks, start=1):
        match = _DOCUMENT.search(block)
        html = match.group(1).strip() if match else block.strip()
        style = _STYLE_COMMENT.search(block[: match.start()] if match else "")
        if len(html) <= MIN_EMAIL_CHARS:
            continue
        variants.append(EmailVariant(
            id=index,
            description=style.group(1).strip() if style else f"Style {index}",
            html=html,
        ))
    return variants
