# chatterbox/core/workflows/templates.py
"""
Message templates.

Placeholders look like `${name}`. Only names listed in the template's
`body_params` are substituted; anything else stays verbatim, including
placeholders for allowed names the caller did not supply.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.models.workflow_pg import EmailTemplateModel, SmsTemplateModel


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


def _as_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    # Numbers, booleans and nested documents render as JSON text.
    return json.dumps(value)


def render_template(
    template: Optional[str],
    params: dict[str, Any],
    allowed_keys: Optional[Iterable[str]],
) -> str:
    rendered = template or ''
    if not allowed_keys:
        return rendered
    for key in allowed_keys:
        if key in params:
            rendered = rendered.replace('${' + key + '}', _as_text(params[key]))
    return rendered


async def render_email_template(
    session: AsyncSession,
    template_key: str,
    params: dict[str, Any],
) -> Optional[RenderedEmail]:
    """Render subject and body of an email template, or None if the key is unknown."""
    template = (
        await session.execute(
            select(EmailTemplateModel).where(EmailTemplateModel.template_key == template_key)
        )
    ).scalar_one_or_none()
    if template is None:
        return None
    return RenderedEmail(
        subject=render_template(template.subject, params, template.body_params),
        html=render_template(template.body, params, template.body_params),
    )


async def render_sms_template(
    session: AsyncSession,
    template_key: str,
    params: dict[str, Any],
) -> Optional[str]:
    template = (
        await session.execute(
            select(SmsTemplateModel).where(SmsTemplateModel.template_key == template_key)
        )
    ).scalar_one_or_none()
    if template is None:
        return None
    return render_template(template.body, params, template.body_params)
