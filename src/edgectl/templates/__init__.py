"""Jinja2 rendering of nginx unit bodies.

Built-in templates ship inside this package under ``nginx/``. A templates
directory from the configuration may shadow any of them by providing a file
with the same relative name.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)

from ..models import UnitKind

TEMPLATE_NAMES: dict[UnitKind, str] = {
    UnitKind.PROXY: "nginx/proxy.conf.j2",
    UnitKind.STATIC: "nginx/static.conf.j2",
    UnitKind.LOAD_BALANCED: "nginx/lb.conf.j2",
    UnitKind.REDIRECT: "nginx/redirect.conf.j2",
    UnitKind.STREAM: "nginx/stream.conf.j2",
}


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render unit bodies from built-in or overridden templates."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose lookups prefer *override_dir* when it exists."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("edgectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,  # noqa: S701 - nginx config, not HTML
            keep_trailing_newline=True,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render {template_name}: {exc}") from exc

    def render_body(self, kind: UnitKind, context: Mapping[str, object]) -> str:
        """Render the unit body for *kind*."""
        return self.render_to_string(TEMPLATE_NAMES[kind], context)


__all__ = ["TEMPLATE_NAMES", "TemplateEngine", "TemplateRenderError"]
