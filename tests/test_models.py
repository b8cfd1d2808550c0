"""Tests for unit models, kind inference and body parsing."""
from __future__ import annotations

import pytest

from edgectl.models import (
    SiteConfig,
    StreamConfig,
    UnitKind,
    extract_site_type,
    infer_site_kind,
    parse_site,
    parse_stream,
)

PROXY_BODY = """server {
    listen 80;
    server_name a.example.com;
    location / {
        proxy_pass http://10.0.0.5:8080;
    }
}
"""

LB_BODY = """upstream b_example_com_backend {
    server 10.0.0.1:80;
    server 10.0.0.2:80;
}
server {
    listen 80;
    server_name b.example.com;
    location / { proxy_pass http://b_example_com_backend; }
}
"""

REDIRECT_BODY = """server {
    listen 80;
    server_name old.example.com;
    return 301 https://new.example.com$request_uri;
}
"""

STREAM_BODY = """upstream mysql_upstream {
    server 10.0.0.7:3306;
}

server {
    listen 3306;
    proxy_pass mysql_upstream;
}
"""


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        (PROXY_BODY, UnitKind.PROXY),
        (LB_BODY, UnitKind.LOAD_BALANCED),
        (REDIRECT_BODY, UnitKind.REDIRECT),
        ("server { root /var/www/html/x; }\n", UnitKind.STATIC),
    ],
)
def test_infer_site_kind_from_content(body: str, expected: UnitKind) -> None:
    """Without a marker the kind follows the body's directives."""
    assert infer_site_kind(body) is expected


def test_marker_wins_over_content() -> None:
    """An explicit ``# site_type:`` marker takes precedence."""
    body = "# site_type: redirect\n" + PROXY_BODY

    assert extract_site_type(body) == "redirect"
    assert infer_site_kind(body) is UnitKind.REDIRECT


def test_unknown_marker_falls_back_to_static() -> None:
    """Unrecognised markers are treated as static sites."""
    assert infer_site_kind("# site_type: mystery\n" + PROXY_BODY) is UnitKind.STATIC


def test_parse_site_proxy_details() -> None:
    """Proxy sites expose backend address and port."""
    site = parse_site("a.example.com", PROXY_BODY)

    assert site.kind is UnitKind.PROXY
    assert site.backend_ip == "10.0.0.5"
    assert site.backend_port == 8080


def test_parse_site_lb_backends() -> None:
    """Load-balanced sites list every upstream server."""
    site = parse_site("b.example.com", LB_BODY)

    assert site.backends == ["10.0.0.1:80", "10.0.0.2:80"]


def test_parse_site_redirect_target() -> None:
    """Redirect sites expose their target URL."""
    site = parse_site("old.example.com", REDIRECT_BODY)

    assert site.target_url == "https://new.example.com$request_uri"


def test_parse_stream_details() -> None:
    """Streams expose their listen port and upstream target."""
    stream = parse_stream("mysql", STREAM_BODY)

    assert stream == StreamConfig(name="mysql", listen_port=3306, target="10.0.0.7:3306")


def test_site_from_mapping_validates_input() -> None:
    """Loose input is normalised and validated."""
    site = SiteConfig.from_mapping(
        {"domain": " lb.example.com ", "type": "LB", "backends": "10.0.0.1:80, 10.0.0.2:80"}
    )

    assert site.domain == "lb.example.com"
    assert site.kind is UnitKind.LOAD_BALANCED
    assert site.backends == ["10.0.0.1:80", "10.0.0.2:80"]

    with pytest.raises(ValueError, match="non-empty"):
        SiteConfig.from_mapping({"domain": ""})
    with pytest.raises(ValueError, match="Unsupported unit kind"):
        SiteConfig.from_mapping({"domain": "x", "type": "ftp"})
    with pytest.raises(ValueError, match="not sites"):
        SiteConfig.from_mapping({"domain": "x", "type": "stream"})


def test_site_context_derives_upstream_name() -> None:
    """Dots in the domain become underscores in the upstream name."""
    context = SiteConfig(domain="b.example.com", kind=UnitKind.LOAD_BALANCED).to_context()

    assert context["upstream_name"] == "b_example_com"
    assert context["site_type"] == "lb"
