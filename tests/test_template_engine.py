"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from edgectl.models import SiteConfig, StreamConfig, UnitKind, parse_site, parse_stream
from edgectl.templates import TemplateEngine, TemplateRenderError


def _site_context(site: SiteConfig) -> dict[str, object]:
    context = site.to_context()
    context["content_root"] = "/var/www/html"
    return context


def test_proxy_template_round_trips_through_parser() -> None:
    """A rendered proxy body carries its marker and parses back to its parameters."""
    engine = TemplateEngine.with_overrides(None)
    site = SiteConfig(
        domain="a.example.com", kind=UnitKind.PROXY, backend_ip="10.0.0.5", backend_port=8080
    )

    body = engine.render_body(UnitKind.PROXY, _site_context(site))

    assert body.startswith("# site_type: proxy\n")
    assert "proxy_pass http://10.0.0.5:8080;" in body
    assert parse_site("a.example.com", body) == site


def test_lb_template_lists_backends() -> None:
    """Every backend becomes a ``server`` line of the upstream block."""
    engine = TemplateEngine.with_overrides(None)
    site = SiteConfig(
        domain="b.example.com",
        kind=UnitKind.LOAD_BALANCED,
        backends=["10.0.0.1:80", "10.0.0.2:80"],
    )

    body = engine.render_body(UnitKind.LOAD_BALANCED, _site_context(site))

    assert "upstream b_example_com_backend {\n    server 10.0.0.1:80;\n" in body
    assert parse_site("b.example.com", body).backends == site.backends


def test_static_template_uses_content_root() -> None:
    """Static sites serve from ``<content_root>/<domain>``."""
    engine = TemplateEngine.with_overrides(None)
    site = SiteConfig(domain="s.example.com", kind=UnitKind.STATIC)

    body = engine.render_body(UnitKind.STATIC, _site_context(site))

    assert "root /var/www/html/s.example.com;" in body


def test_stream_template_parses_back() -> None:
    """Stream bodies expose listen port and target to the parser."""
    engine = TemplateEngine.with_overrides(None)
    stream = StreamConfig(name="mysql", listen_port=3306, target="10.0.0.7:3306")

    body = engine.render_body(UnitKind.STREAM, stream.to_context())

    assert parse_stream("mysql", body) == stream


def test_missing_variable_raises() -> None:
    """Strict undefined variables surface as TemplateRenderError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError):
        engine.render_body(UnitKind.REDIRECT, {"domain": "x.example.com"})


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Templates in the override directory take precedence."""
    override = tmp_path / "nginx"
    override.mkdir()
    (override / "redirect.conf.j2").write_text("# custom {{ domain }} -> {{ target_url }}\n")
    engine = TemplateEngine.with_overrides(tmp_path)

    body = engine.render_body(
        UnitKind.REDIRECT, {"domain": "x.example.com", "target_url": "https://y"}
    )

    assert body == "# custom x.example.com -> https://y\n"
