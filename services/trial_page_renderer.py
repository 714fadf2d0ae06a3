"""Render the terminal HTML page shown after the GitHub trial callback."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from core.logging import get_logger
from services.trial_errors import TrialServiceError
from services.trial_linkage import (
    ACTION_EXTENDED,
    ACTION_LINKED,
    ACTION_REACTIVATED,
    ACTION_REBOUND,
    ACTION_STARTED,
    LinkageOutcome,
)
from services.trial_service import compute_status

logger = get_logger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent
TEMPLATE_DIR = REPO_ROOT / "templates" / "trial"

SUCCESS_REASON_CODE = "trial.ok"

_PAGE_ENV: Optional[Environment] = None

_SUCCESS_HEADLINES: Mapping[str, str] = {
    ACTION_STARTED: "Your trial has started",
    ACTION_LINKED: "GitHub account linked",
    ACTION_REBOUND: "Welcome back",
    ACTION_REACTIVATED: "Your trial has been reactivated",
    ACTION_EXTENDED: "Trial extended",
}


def _get_page_env() -> Environment:
    global _PAGE_ENV
    if _PAGE_ENV is None:
        _PAGE_ENV = Environment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
    return _PAGE_ENV


def _render_template(name: str, context: Mapping[str, Any]) -> str:
    try:
        template = _get_page_env().get_template(name)
    except TemplateNotFound as exc:  # pragma: no cover - deployment guard
        raise RuntimeError(f"Trial template '{name}' not found.") from exc
    return template.render(**context)


def render_callback_success(outcome: LinkageOutcome) -> str:
    status = compute_status(outcome.record)
    context: MutableMapping[str, Any] = {
        "success": True,
        "reason_code": SUCCESS_REASON_CODE,
        "action": outcome.action,
        "headline": _SUCCESS_HEADLINES.get(outcome.action, "All set"),
        "message": None,
        "username": outcome.identity.username,
        "days_remaining": status.days_remaining,
        "expires_at": status.expires_at.strftime("%Y-%m-%d") if status.expires_at else None,
        "days_until_eligible": None,
    }
    return _render_template("callback.html.jinja", context)


def render_callback_failure(error: TrialServiceError) -> str:
    context: MutableMapping[str, Any] = {
        "success": False,
        "reason_code": error.code,
        "action": None,
        "headline": "We could not update your trial",
        "message": error.message,
        "username": None,
        "days_remaining": None,
        "expires_at": None,
        "days_until_eligible": error.extra.get("daysRemaining"),
    }
    return _render_template("callback.html.jinja", context)


__all__ = ["SUCCESS_REASON_CODE", "render_callback_failure", "render_callback_success"]
