#!/usr/bin/env python3
"""
HTML assembly for reports and admin emails using Jinja2 templates.

AI summaries arrive as Markdown and are converted with python-Markdown before
being embedded; everything else is autoescaped by Jinja2.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markdown import markdown as md
from markupsafe import Markup

from config import config

env = Environment(
    loader=FileSystemLoader(config.TEMPLATES_PATH),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def markdown_to_html(text: Optional[str]) -> Markup:
    """Convert Markdown to HTML using the python-Markdown library."""
    if not text:
        return Markup("")
    return Markup(md(text, extensions=['extra', 'sane_lists']))


env.filters["markdown"] = markdown_to_html
env.filters["datefmt"] = lambda value, fmt="%b %d, %Y": value.strftime(fmt) if isinstance(value, datetime) else ""


def source_label(platform_type: str, target: str) -> str:
    return f"r/{target}" if platform_type == "reddit" else target


def render_report(
    *,
    platform_type: str,
    target: str,
    generated_at: datetime,
    cutoff: datetime,
    weekly_summary: Optional[str],
    analyses: List[Dict[str, Any]],
    top_comments: List[Dict[str, Any]],
    quick_links: List[Dict[str, Any]],
    stats: Dict[str, Any],
) -> str:
    template = env.get_template("report.html")
    return template.render(
        platform_type=platform_type,
        label=source_label(platform_type, target),
        generated_at=generated_at,
        cutoff=cutoff,
        weekly_summary=weekly_summary,
        analyses=analyses,
        top_comments=top_comments,
        quick_links=quick_links,
        stats=stats,
    )


def render_admin_email(
    *,
    title: str,
    recipient_name: str,
    report_html: str,
    week_start: datetime,
    week_end: datetime,
    is_admin_report: bool = True,
) -> str:
    template = env.get_template("admin_email.html")
    return template.render(
        title=title,
        recipient_name=recipient_name,
        report_html=Markup(report_html),
        week_start=week_start,
        week_end=week_end,
        is_admin_report=is_admin_report,
    )
