"""
Configuration file templates and the typed records they are rendered from.

The defaults below are written to <workspace>/templates by `install`; rendering
always reads the workspace copies so operators can customize them.
"""

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound

from site_deployer.errors import TemplateRenderError
from site_deployer.registry import validate_site_name

logger = logging.getLogger(__name__)

SITE_COMPOSE_TEMPLATE = "docker-compose.yml.template"
SITE_ROUTE_TEMPLATE = "nginx-config.conf.template"
PROXY_COMPOSE_TEMPLATE = "nginx-docker-compose.yml.template"
PROXY_DEFAULT_SERVER_TEMPLATE = "site-deployer.conf.template"
PROXY_NGINX_TEMPLATE = "nginx.conf.template"
INDEX_HTML_TEMPLATE = "index.html.template"

DEFAULT_TEMPLATES = {
    SITE_COMPOSE_TEMPLATE: """\
services:
  {{ service_name }}:
    image: wordpress:latest
    container_name: {{ service_name }}
    restart: unless-stopped
    labels:
      site-deployer.site: {{ site_name }}
      site-deployer.short-name: {{ short_name }}
    depends_on:
      - {{ service_name }}-db
    environment:
      WORDPRESS_DB_HOST: {{ service_name }}-db
      WORDPRESS_DB_USER: wordpress
      WORDPRESS_DB_PASSWORD: wordpress
      WORDPRESS_DB_NAME: wordpress
    volumes:
      - ./wp-data:/var/www/html
    networks:
      - default
      - proxy

  {{ service_name }}-db:
    image: mariadb:11
    container_name: {{ service_name }}-db
    restart: unless-stopped
    environment:
      MARIADB_DATABASE: wordpress
      MARIADB_USER: wordpress
      MARIADB_PASSWORD: wordpress
      MARIADB_RANDOM_ROOT_PASSWORD: "1"
    volumes:
      - db-data:/var/lib/mysql

  wpcli:
    image: wordpress:cli
    user: "33:33"
    profiles: ["cli"]
    depends_on:
      - {{ service_name }}
      - {{ service_name }}-db
    environment:
      WORDPRESS_DB_HOST: {{ service_name }}-db
      WORDPRESS_DB_USER: wordpress
      WORDPRESS_DB_PASSWORD: wordpress
      WORDPRESS_DB_NAME: wordpress
    volumes:
      - ./wp-data:/var/www/html
      - {{ repos_dir }}:{{ repos_dir }}:ro

volumes:
  db-data:
    name: {{ service_name }}-db-data

networks:
  proxy:
    name: {{ network }}
    external: true
""",
    SITE_ROUTE_TEMPLATE: """\
server {
    listen 80;
    server_name {{ domain }};

    client_max_body_size 64M;

    location / {
        proxy_pass http://{{ service_name }}:80;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }
}
""",
    PROXY_COMPOSE_TEMPLATE: """\
services:
  nginx:
    image: nginx:stable-alpine
    container_name: {{ proxy_container }}
    restart: unless-stopped
    ports:
      - "80:80"
    volumes:
      - {{ workspace }}/nginx.conf:/etc/nginx/nginx.conf:ro
      - {{ nginx_config_dir }}:/etc/nginx/conf.d:ro
      - {{ html_dir }}:/usr/share/nginx/html:ro

networks:
  default:
    name: {{ network }}
    external: true
""",
    PROXY_DEFAULT_SERVER_TEMPLATE: """\
server {
    listen 80 default_server;
    server_name _;

    root /usr/share/nginx/html;
    index index.html;
}
""",
    PROXY_NGINX_TEMPLATE: """\
user nginx;
worker_processes auto;

events {
    worker_connections 1024;
}

http {
    include /etc/nginx/mime.types;
    default_type application/octet-stream;
    sendfile on;
    keepalive_timeout 65;

    # Docker's embedded DNS, so upstreams resolve once their containers start
    resolver 127.0.0.11 valid=10s;

    # Only active routes; parked routes end in .disabled
    include /etc/nginx/conf.d/*.conf;
}
""",
    INDEX_HTML_TEMPLATE: """\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{{ app_name }}</title>
</head>
<body>
    <h1>{{ app_name }}</h1>
    <p>Sites are served at &lt;name&gt;.{{ domain_suffix }}</p>
</body>
</html>
""",
}


def short_name(site_name: str) -> str:
    """
    Shortened name for resources with tight length limits.

    Webhook sites are named owner-repo-branch, so the owner and branch parts are
    dropped when there are at least three parts; the rest is cut to 10 characters.
    """
    parts = site_name.split("-")
    repo_part = "-".join(parts[1:-1]) if len(parts) >= 3 else site_name
    return repo_part[:10].rstrip("-")


@dataclass(frozen=True)
class SiteContext:
    site_name: str
    service_name: str
    domain: str
    short_name: str
    network: str
    repos_dir: str
    proxy_container: str

    def __post_init__(self):
        validate_site_name(self.site_name)
        if not re.match(r"^[a-z0-9][a-z0-9_.-]*$", self.service_name):
            raise ValueError(f"invalid service name: {self.service_name}")

    @classmethod
    def for_site(cls, settings, site_name: str) -> "SiteContext":
        return cls(
            site_name=site_name,
            service_name=f"{settings.site_prefix}{site_name}",
            domain=f"{site_name}.{settings.domain_suffix}",
            short_name=short_name(site_name),
            network=settings.network,
            repos_dir=str(settings.repos_dir),
            proxy_container=settings.proxy_container,
        )


@dataclass(frozen=True)
class ProxyContext:
    app_name: str
    workspace: str
    nginx_config_dir: str
    html_dir: str
    network: str
    proxy_container: str
    domain_suffix: str

    @classmethod
    def for_settings(cls, settings, app_name: str) -> "ProxyContext":
        return cls(
            app_name=app_name,
            workspace=str(settings.workspace),
            nginx_config_dir=str(settings.nginx_config_dir),
            html_dir=str(settings.html_dir),
            network=settings.network,
            proxy_container=settings.proxy_container,
            domain_suffix=settings.domain_suffix,
        )


def install_defaults(templates_dir: Path, force: bool = False) -> None:
    """Write the default templates, keeping customized copies unless force is set"""
    templates_dir.mkdir(parents=True, exist_ok=True)
    for file_name, content in DEFAULT_TEMPLATES.items():
        target = templates_dir / file_name
        if target.exists() and not force:
            logger.info(f"Keeping existing template {file_name}")
            continue
        target.write_text(content)


class TemplateRenderer:
    def __init__(self, templates_dir: Path):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context) -> str:
        """
        :raises TemplateRenderError: if the template is missing or fails to render
        """
        try:
            return self.env.get_template(template_name).render(**asdict(context))
        except TemplateNotFound as e:
            raise TemplateRenderError(
                f"template {template_name} missing, run `install` to restore the defaults") from e
        except TemplateError as e:
            raise TemplateRenderError(f"template {template_name} failed to render: {e}") from e

    def render_to(self, template_name: str, output_path: Path, context) -> None:
        output_path.write_text(self.render(template_name, context))
