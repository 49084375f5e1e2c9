"""Prompt rendering — template library, {{var}} substitution, previous-results section."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from promptchain.models import Result, Task

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


@dataclass
class PromptTemplate:
    id: str
    template: str
    name: str = ""
    category: str = "general"
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "template": self.template,
        }


def render_template(text: str, variables: dict[str, Any]) -> str:
    """Replace {{name}} placeholders. Unknown names are left in place."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER.sub(_sub, text)


class TemplateLibrary:
    """Named prompt templates, with an optional default template per task kind."""

    def __init__(self, templates: Iterable[PromptTemplate] = ()):
        self._templates: dict[str, PromptTemplate] = {}
        self._defaults: dict[str, str] = {}
        for template in templates:
            self.add(template)

    def add(self, template: PromptTemplate):
        self._templates[template.id] = template

    def get(self, template_id: str) -> PromptTemplate | None:
        return self._templates.get(template_id)

    def remove(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    def set_default(self, kind: str, template_id: str):
        if template_id not in self._templates:
            raise KeyError(f"Template with ID {template_id} does not exist")
        self._defaults[kind] = template_id

    def default_for(self, kind: str) -> PromptTemplate | None:
        template_id = self._defaults.get(kind)
        return self._templates.get(template_id) if template_id else None

    def fill(self, template_id: str, variables: dict[str, Any]) -> str:
        template = self._templates.get(template_id)
        if template is None:
            raise KeyError(f"Template with ID {template_id} does not exist")
        return render_template(template.template, variables)

    def all(self) -> list[PromptTemplate]:
        return list(self._templates.values())

    def by_category(self, category: str) -> list[PromptTemplate]:
        return [t for t in self._templates.values() if t.category == category]


def task_template_text(task: Task, library: TemplateLibrary | None = None) -> str:
    """Pick the raw template: inline prompt, referenced template, kind default, then description."""
    if task.prompt:
        return task.prompt
    if task.prompt_template:
        template = library.get(task.prompt_template) if library else None
        if template is None:
            raise KeyError(f"Task {task.id} references unknown template {task.prompt_template}")
        return template.template
    if library:
        default = library.default_for(task.kind)
        if default:
            return default.template
    return task.description or task.title


def previous_results_section(results: Iterable[Result]) -> str:
    results = [r for r in results if r.ok]
    if not results:
        return ""
    parts = ["\n\n### Previous Results:\n"]
    for result in results:
        parts.append(f"\n#### Task: {result.task_id}\n{result.output}\n")
        if result.artifact:
            parts.append(f"\n```\n{result.artifact}\n```\n")
    return "".join(parts)


def render_task_prompt(
    task: Task,
    variables: dict[str, Any],
    library: TemplateLibrary | None = None,
    dependency_results: Iterable[Result] = (),
) -> str:
    prompt = render_template(task_template_text(task, library), variables)
    if task.requires_previous_results:
        prompt += previous_results_section(dependency_results)
    return prompt
