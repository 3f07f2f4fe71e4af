"""Template renderer adapters implementing ``TemplateRenderer``."""

from __future__ import annotations

from dataclasses import dataclass
from string import Formatter
from typing import Any, Mapping

import structlog

from herald.domain.exceptions import TemplateRenderError
from herald.ports.outbound import TemplateRenderer

logger = structlog.get_logger(__name__)

DEFAULT_LOCALE = "en"


@dataclass(frozen=True, slots=True)
class Template:
    body: str
    subject: str | None = None


class DictTemplateRenderer(TemplateRenderer):
    """Renders ``str.format`` templates keyed by ``(key, locale)``.

    Missing locales fall back to ``en``; missing variables are a render
    failure, never a silently blank message.
    """

    def __init__(self, templates: Mapping[str, Mapping[str, Template]] | None = None) -> None:
        self._templates: dict[str, dict[str, Template]] = {
            key: dict(locales) for key, locales in (templates or {}).items()
        }
        self._formatter = Formatter()

    def register(self, key: str, template: Template, locale: str = DEFAULT_LOCALE) -> None:
        self._templates.setdefault(key, {})[locale] = template

    async def render(
        self, key: str, variables: Mapping[str, Any], locale: str = DEFAULT_LOCALE
    ) -> tuple[str | None, str]:
        locales = self._templates.get(key)
        if not locales:
            raise TemplateRenderError(key, "unknown template")
        template = locales.get(locale) or locales.get(DEFAULT_LOCALE)
        if template is None:
            raise TemplateRenderError(key, f"no {locale!r} or default locale")
        try:
            subject = self._formatter.vformat(template.subject, (), dict(variables)) if template.subject else None
            body = self._formatter.vformat(template.body, (), dict(variables))
        except (KeyError, IndexError, ValueError) as exc:
            logger.warning("template_render_failed", template_key=key, locale=locale, error=str(exc))
            raise TemplateRenderError(key, f"missing or invalid variable {exc}") from exc
        return subject, body
