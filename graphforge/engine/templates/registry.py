"""Template registry: explicit list of node templates, keyed by id."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from graphforge.engine.errors import DuplicateTemplateError, InvalidTemplateConfigError, TemplateNotFoundError

if TYPE_CHECKING:
    from graphforge.engine.models.enums import NodeKind
    from graphforge.engine.templates.base import NodeTemplate


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"]) or "config"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


class TemplateRegistry:
    def __init__(self) -> None:
        self._templates: dict[str, NodeTemplate] = {}

    @classmethod
    def from_templates(cls, templates: Iterable[NodeTemplate]) -> TemplateRegistry:
        registry = cls()
        for template in templates:
            registry.register(template)
        return registry

    def register(self, template: NodeTemplate) -> None:
        if template.id in self._templates:
            raise DuplicateTemplateError(template.id)
        self._templates[template.id] = template
        logger.debug("Template registry: registered {} ({})", template.id, template.kind)

    # -- Query -----------------------------------------------------------------

    def has_template(self, template_id: str) -> bool:
        return template_id in self._templates

    def get_template(self, template_id: str) -> NodeTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def get_templates_by_kind(self, kind: NodeKind) -> list[NodeTemplate]:
        return [t for t in self._templates.values() if t.kind == kind]

    def all_templates(self) -> list[NodeTemplate]:
        return list(self._templates.values())

    # -- Validation ------------------------------------------------------------

    def validate_config(self, template_id: str, raw: dict[str, Any] | None) -> BaseModel:
        """Validate *raw* against the template schema, dropping unknown fields."""
        template = self.get_template(template_id)
        try:
            return template.schema.model_validate(raw or {})
        except ValidationError as exc:
            raise InvalidTemplateConfigError(template_id, _format_validation_error(exc)) from exc
