"""
content.py — Shrinks scraped pages to fit the analysis prompt.
HTML is flattened to text with BeautifulSoup, oversized pages are cut down
around mentions of the model, and results are joined under a total character limit.
"""

import re

from bs4 import BeautifulSoup

from config import LLM
from models import Job
from monitoring import get_logger

logger = get_logger("content")

MAX_CONTENT_PER_URL = LLM["max_content_per_url"]
MAX_TOTAL_CONTENT = LLM["max_total_content"]

# Characters of context kept on each side of a model mention
MENTION_CONTEXT_CHARS = 500

MISSING_CONTENT_NOTE = "[Note: Could not fetch full content - using snippet only]"
OMITTED_NOTE = "[Note: Remaining URLs omitted to stay within token limits]"

_HTML_HINT = re.compile(r"<\s*(html|body|div|p|table|span|br|head)\b", re.IGNORECASE)


def looks_like_html(text: str) -> bool:
    return bool(_HTML_HINT.search(text[:2000]))


def html_to_text(html: str) -> str:
    """Visible text of an HTML document, one block per line."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg", "iframe"]):
        tag.decompose()
    text = soup.get_text(separator="\n")
    lines = [re.sub(r"[ \t　]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def simple_truncate(content: str, max_length: int) -> str:
    """Cut at max_length, backing up to a sentence or line break when one is close."""
    if len(content) <= max_length:
        return content

    truncated = content[:max_length]
    cut_point = max(truncated.rfind("."), truncated.rfind("。"), truncated.rfind("\n"))
    if cut_point > max_length * 0.7:
        truncated = truncated[:cut_point + 1]
    return truncated + "\n\n[Content truncated due to length]"


def extract_mentions(content: str, model: str, max_length: int) -> str:
    """Keep windows of text around each mention of the model, earliest first."""
    content_lower = content.lower()
    model_lower = model.lower()

    mentions = []
    index = content_lower.find(model_lower)
    while index != -1:
        mentions.append(index)
        index = content_lower.find(model_lower, index + len(model_lower))

    # Merge overlapping windows
    windows = []
    for mention in mentions:
        start = max(0, mention - MENTION_CONTEXT_CHARS)
        end = min(len(content), mention + len(model) + MENTION_CONTEXT_CHARS)
        if windows and start <= windows[-1][1]:
            windows[-1] = (windows[-1][0], end)
        else:
            windows.append((start, end))

    separator = "\n\n[...]\n\n"
    result = ""
    for start, end in windows:
        section = content[start:end]
        if start > 0:
            section = "..." + section
        if end < len(content):
            section += "..."
        if result and len(result) + len(separator) + len(section) > max_length:
            break
        result = f"{result}{separator}{section}" if result else section

    return result[:max_length]


def shrink(content: str, model: str, max_length: int = MAX_CONTENT_PER_URL) -> str:
    """Convert HTML to text and fit it into max_length characters."""
    if looks_like_html(content):
        content = html_to_text(content)

    content = re.sub(r"\n{3,}", "\n\n", content)
    if len(content) <= max_length:
        return content

    if model and model.lower() in content.lower():
        logger.info(f"Model '{model}' found in content, keeping text around mentions")
        return extract_mentions(content, model, max_length) + "\n\n[Content truncated to preserve product mentions]"

    return simple_truncate(content, max_length)


def format_results(
    job: Job,
    max_per_url: int = MAX_CONTENT_PER_URL,
    max_total: int = MAX_TOTAL_CONTENT,
) -> str:
    """Render a job's scraped results as the search-context block of the prompt."""
    formatted = []
    total_chars = 0

    for position, task in enumerate(job.urls, start=1):
        result = job.url_results.get(task.index)

        lines = [
            "=" * 40,
            f"RESULT #{position}:",
            "=" * 40,
            f"Title: {task.title}",
            f"URL: {(result.url if result and result.url else task.url)}",
            f"Snippet: {task.snippet}",
            "",
        ]
        if result and result.content:
            original_length = len(result.content)
            body = shrink(result.content, job.subject.model, max_per_url)
            if len(body) < original_length:
                logger.info(f"Result #{position} shrunk from {original_length} to {len(body)} chars")
            lines.append("FULL PAGE CONTENT:")
            lines.append(body)
        else:
            lines.append(MISSING_CONTENT_NOTE)
        lines.append("=" * 40)

        section = "\n".join(lines) + "\n"
        if total_chars + len(section) > max_total:
            logger.info(f"Stopping at result #{position}: total limit of {max_total} chars reached")
            formatted.append(OMITTED_NOTE)
            break

        formatted.append(section)
        total_chars += len(section)

    logger.info(f"Formatted search context: {total_chars} chars (~{total_chars // 4} tokens)")
    return "\n".join(formatted).strip()
