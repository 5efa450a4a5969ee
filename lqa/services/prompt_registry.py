"""Prompt registry: versioned AI-tier prompt templates under ``lqa/prompts/<name>/<version>.yaml``.

Template files are append-only: a changed prompt gets a new version file so
findings can be traced back to the exact wording that produced them.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    version: str
    body: str
    variables: tuple[str, ...] = ()
    description: str = ""

    def render(self, **values) -> str:
        missing = [v for v in self.variables if v not in values]
        if missing:
            raise KeyError(f"Prompt {self.name}/{self.version} is missing variables: {', '.join(missing)}")
        return self.body.format(**values)


@lru_cache(maxsize=32)
def load_template(name: str, version: str) -> Optional[PromptTemplate]:
    """Read and cache one template file. Returns None if it does not exist."""
    path = _PROMPTS_DIR / name / f"{version}.yaml"
    if not path.is_file():
        return None
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict) or not isinstance(data.get("body"), str):
        logger.warning("[ai] prompt %s/%s has no body", name, version)
        return None
    return PromptTemplate(
        name=name,
        version=version,
        body=data["body"].strip(),
        variables=tuple(data.get("variables") or ()),
        description=data.get("description") or "",
    )


def render_prompt(name: str, version: str, **variables) -> str:
    """Load and fill a template. Raises LookupError when the template does not exist."""
    template = load_template(name, version)
    if template is None:
        raise LookupError(f"Prompt {name}/{version} not found under {_PROMPTS_DIR}")
    return template.render(**variables)
