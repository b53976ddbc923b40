from typing import Mapping

from .errors import TemplateNotFoundError
from .types import TemplateDef

AUTO_TEMPLATE = "auto"

_PREAMBLE = """You are a skilled software engineer.
You do not make mistakes.
Generate a code fragment based on the user's request.
You can install additional dependencies if needed.
Do not touch project dependencies files like package.json, package-lock.json, requirements.txt, etc.
Do not wrap code in backticks.
Always break the lines correctly.
Provide working, runnable code only.
Fill all required fields in the response schema completely.
You can use one of the following templates:"""

_FIELD_CHECKLIST = """IMPORTANT: You must respond with a valid JSON object containing all required fields:
- commentary: Detailed explanation of what you're doing
- template: Template name being used
- title: Short title (max 3 words)
- description: Brief description (1 sentence)
- additional_dependencies: Array of extra dependencies needed
- has_additional_dependencies: Boolean if extra deps are needed
- install_dependencies_command: Command to install dependencies
- port: Port number (null if none)
- file_path: Relative file path
- code: Complete working code"""


def select_templates(
    selector: str | Mapping[str, TemplateDef],
    catalogue: Mapping[str, TemplateDef],
) -> dict[str, TemplateDef]:
    if not isinstance(selector, str):
        if not selector:
            raise TemplateNotFoundError("inline template mapping is empty")
        return dict(selector)
    template_id = selector.strip()
    if not template_id or template_id == AUTO_TEMPLATE:
        return dict(catalogue)
    template = catalogue.get(template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)
    return {template_id: template}


def templates_to_prompt(templates: Mapping[str, TemplateDef]) -> str:
    lines = []
    for index, (template_id, template) in enumerate(templates.items(), start=1):
        port = template.port if template.port else "none"
        lines.append(
            f'{index}. {template_id}: "{template.instructions}". '
            f"File: {template.file or 'none'}. "
            f"Dependencies installed: {', '.join(template.lib)}. "
            f"Port: {port}."
        )
    return "\n".join(lines)


def to_prompt(templates: Mapping[str, TemplateDef]) -> str:
    return f"{_PREAMBLE}\n{templates_to_prompt(templates)}\n\n{_FIELD_CHECKLIST}"
