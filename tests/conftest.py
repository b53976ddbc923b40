"""Pytest configuration: project importability and shared config fixtures."""

from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Any

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT_DIR)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

PROVIDERS_TOML = """
[dummy]
type = "dummy"
base_url = "local://dummy"

[openai]
type = "openai"
base_url = "https://api.openai.com/v1"
auth_env = "OPENAI_API_KEY"

[anthropic]
type = "anthropic"
base_url = "https://api.anthropic.com"
auth_env = "ANTHROPIC_API_KEY"
""".strip()

TEMPLATES_YAML = """
code-interpreter-v1:
  name: Python data analyst
  lib: [python, jupyter, numpy, pandas]
  file: script.py
  instructions: Runs code as a Jupyter notebook cell.
  port: null
nextjs-developer:
  name: Next.js developer
  lib: [nextjs@14.2.5, typescript, tailwindcss]
  file: pages/index.tsx
  instructions: A Next.js 13+ app that reloads automatically.
  port: 3000
""".strip()


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "providers.toml").write_text(PROVIDERS_TOML, encoding="utf-8")
    (directory / "templates.yaml").write_text(TEMPLATES_YAML, encoding="utf-8")
    return directory


@pytest.fixture
def server_module(config_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Any:
    monkeypatch.setenv("CODEGEN_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("CODEGEN_METRICS_DIR", str(tmp_path / "metrics"))
    for name in (
        "RATE_LIMIT_MAX_REQUESTS",
        "RATE_LIMIT_WINDOW",
        "SANDBOX_API_URL",
        "CODEGEN_CORS_ALLOW_ORIGINS",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    sys.modules.pop("src.codegen.server", None)
    importlib.invalidate_caches()
    return importlib.import_module("src.codegen.server")
