from stackship.CONVERTERS.to_nginx import NginxConverter
from stackship.PARSERS.route_parser import RouteParser

ROUTES = """
static_root: /usr/share/nginx/html
routes:
  - {path: /api/, service: api, port: 8000, rewrite: strip-prefix}
  - {path: /ws/, service: api, port: 8001}
  - {path: /}
"""


def test_render():
    table = RouteParser().parse_from_string(ROUTES)
    config = NginxConverter(table, listen=8080).render()

    assert "listen 8080;" in config
    assert "root /usr/share/nginx/html;" in config
    assert "proxy_pass http://api:8000/;" in config
    assert "proxy_pass http://api:8001;" in config
    assert "try_files $uri /index.html;" in config
    assert config.index("location /api/") < config.index("location / {")
    assert "proxy_next_upstream off;" in config


def test_convert_writes_file(tmp_path):
    table = RouteParser().parse_from_string(ROUTES)
    out = tmp_path / "nginx" / "default.conf"
    NginxConverter(table, static_root="/srv/www").convert(str(out))
    assert "root /srv/www;" in out.read_text()
