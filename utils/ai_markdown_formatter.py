"""Turn AI output into sanitized markdown, HTML and plain text for the officials' API."""
import re
from typing import Dict, List

import bleach
from markdown_it import MarkdownIt


# HTML input disabled; everything rendered still goes through bleach.
_md = MarkdownIt("commonmark", {"linkify": True, "typographer": True, "html": False}).enable(["linkify", "table", "strikethrough"])

ALLOWED_TAGS = frozenset(
    {"p", "br", "hr", "h2", "h3", "h4", "strong", "em", "a", "code", "pre", "blockquote"}
    | {"ul", "ol", "li"}
    | {"table", "thead", "tbody", "tr", "th", "td"}
)

ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "rel"],
    "th": ["align"],
    "td": ["align"],
}


def _normalize_whitespace(text: str) -> str:
    cleaned = re.sub(r"[\r\t]+", " ", text or "")
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def markdown_to_html(md_text: str) -> str:
    rendered = _md.render(_normalize_whitespace(md_text))
    return bleach.clean(rendered, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def format_sections(sections: List[Dict[str, object]]) -> str:
    """Build markdown from an ordered list of ``{title, bullets, body}`` sections."""
    parts: List[str] = []
    for section in sections:
        title = _normalize_whitespace(str(section.get("title", "") or ""))
        if title:
            parts.append(f"## {title}")
        body = section.get("body") or ""
        if body:
            parts.append(_normalize_whitespace(str(body)))
        for bullet in section.get("bullets") or []:
            if bullet is None:
                continue
            bullet_text = _normalize_whitespace(str(bullet))
            if bullet_text:
                parts.append(f"- {bullet_text}")
        parts.append("")
    return "\n".join(p for p in parts if p.strip())


def format_analysis_markdown(complaint: Dict[str, object], analysis: Dict[str, object]) -> str:
    sections = [
        {
            "title": "Complaint",
            "bullets": [
                f"Title: {complaint.get('title', '')}",
                f"Category: {complaint.get('category', '')}",
                f"Location: {complaint.get('location') or 'Not provided'}",
            ],
        },
        {
            "title": "Assessment",
            "body": analysis.get("summary"),
            "bullets": [
                f"Urgency: {analysis.get('urgency_score')}/10",
                f"Risk level: {analysis.get('risk_level')}",
                f"Sentiment: {analysis.get('sentiment')}",
            ],
        },
        {"title": "Key Issues", "bullets": list(analysis.get("key_issues") or [])},
        {"title": "Recommended Actions", "bullets": list(analysis.get("recommended_actions") or [])},
    ]
    if analysis.get("patterns"):
        sections.append({"title": "Patterns", "body": analysis.get("patterns")})
    return format_sections(sections)
