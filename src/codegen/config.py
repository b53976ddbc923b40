import os
from dataclasses import dataclass
from typing import Dict, List, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on Python < 3.11
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .types import TemplateDef

ProviderKind = Literal["openai", "anthropic", "ollama", "dummy"]
ResponseFormatKind = Literal["json_schema", "json_object"]

PROVIDERS_FILE = "providers.toml"
TEMPLATES_FILE = "templates.yaml"


@dataclass(frozen=True)
class ProviderDef:
    name: str
    type: ProviderKind
    base_url: str
    auth_env: str | None = None
    response_format: ResponseFormatKind = "json_schema"
    timeout_s: float = 300.0


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    templates: Dict[str, TemplateDef]


class _ProviderModel(BaseModel):
    type: ProviderKind = "openai"
    base_url: str = ""
    auth_env: str | None = None
    response_format: ResponseFormatKind = "json_schema"
    timeout_s: float = Field(default=300.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class _TemplateModel(BaseModel):
    name: str
    lib: List[str] = Field(default_factory=list)
    file: str | None = None
    instructions: str
    port: int | None = None

    model_config = ConfigDict(extra="forbid")


def _format_validation_error(source: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{source}: {location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def load_providers(path: str) -> Dict[str, ProviderDef]:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for name, raw in data.items():
        if not isinstance(raw, dict):
            raise ValueError(f"{PROVIDERS_FILE}: provider '{name}' must be a table")
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(_format_validation_error(f"{PROVIDERS_FILE} [{name}]", exc)) from exc
        providers[name] = ProviderDef(
            name=name,
            type=parsed.type,
            base_url=parsed.base_url.strip(),
            auth_env=parsed.auth_env,
            response_format=parsed.response_format,
            timeout_s=float(parsed.timeout_s),
        )
    return providers


def load_templates(path: str) -> Dict[str, TemplateDef]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{TEMPLATES_FILE}: expected a mapping of template ids")
    templates: Dict[str, TemplateDef] = {}
    for template_id, raw in data.items():
        try:
            parsed = _TemplateModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(_format_validation_error(f"{TEMPLATES_FILE} [{template_id}]", exc)) from exc
        templates[str(template_id)] = TemplateDef(**parsed.model_dump())
    return templates


def load_config(config_dir: str) -> LoadedConfig:
    prov_path = os.path.join(config_dir, PROVIDERS_FILE)
    templates_path = os.path.join(config_dir, TEMPLATES_FILE)
    providers = load_providers(prov_path)
    templates = load_templates(templates_path)
    if not templates:
        raise ValueError(f"{TEMPLATES_FILE}: at least one template must be defined")
    return LoadedConfig(providers=providers, templates=templates)
