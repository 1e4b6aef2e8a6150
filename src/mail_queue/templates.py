# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Template rendering for enqueue requests that carry a ``template_code``.

Templates live in the ``email_templates`` table and are rendered with Jinja2
at enqueue time; the queue stores and sends the rendered result only.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import jinja2

from .exceptions import TemplateError

if TYPE_CHECKING:
    from .entities import EmailTemplatesTable

logger = logging.getLogger(__name__)


class TemplateRenderer:
    """Renders stored templates into (subject, content).

    Undefined variables are errors, so a request missing a variable is
    rejected instead of sending a half-filled email.
    """

    def __init__(self, table: EmailTemplatesTable):
        self.table = table
        self.env = jinja2.Environment(
            loader=jinja2.BaseLoader(),
            autoescape=jinja2.select_autoescape(default_for_string=False),
            undefined=jinja2.StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render_string(self, source: str, variables: dict[str, Any]) -> str:
        return self.env.from_string(source).render(**variables)

    async def render(
        self, template_code: str, variables: dict[str, Any] | None = None
    ) -> tuple[str, str]:
        """Render a stored template.

        Raises:
            TemplateError: Template unknown, disabled, or rendering failed.
        """
        template = await self.table.get(template_code)
        if template is None:
            raise TemplateError(template_code)
        if not template.get("enabled"):
            raise TemplateError(template_code, "is disabled")
        variables = variables or {}
        try:
            subject = self.render_string(template["subject"], variables)
            content = self.render_string(template["content"], variables)
        except jinja2.TemplateError as exc:
            logger.error("Template %s rendering failed: %s", template_code, exc)
            raise TemplateError(template_code, f"failed to render: {exc}") from exc
        logger.debug("Template %s rendered", template_code)
        return subject, content


__all__ = ["TemplateRenderer"]
