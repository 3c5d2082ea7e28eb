import shlex
from typing import List

from ..models import ManagedResource, SiteSource
from ..validation import domain_errors
from .base import Installer, Stage, secret_forms, write_file

FRAMEWORKS = ["static", "php", "laravel", "wordpress"]
WORDPRESS_FIELDS = ["db_name", "db_user", "db_password", "admin_email", "admin_user", "admin_password"]
WP_CLI_URL = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"


def site_root(app_user: str, domain: str) -> str:
    return f"/home/{app_user}/{domain}"


class SiteInstaller(Installer):
    """An nginx virtual host serving ``<site>/current``, a symlink into ``<site>/releases``."""

    kind = "site"
    schema = {
        "type": "object",
        "required": ["domain", "framework"],
        "properties": {
            "domain": {"type": "string", "maxLength": 253},
            "framework": {"type": "string", "enum": FRAMEWORKS},
            "runtime_version": {"type": "string"},
            "document_root": {"type": "string", "pattern": "^[A-Za-z0-9._/-]*$"},
            "repository_url": {"type": "string", "minLength": 1},
            "branch": {"type": "string", "minLength": 1},
            "deploy_script": {"type": "string"},
            "auto_deploy": {"type": "boolean"},
            "wordpress": {
                "type": "object",
                "properties": {name: {"type": "string", "minLength": 1} for name in WORDPRESS_FIELDS + ["title", "db_host"]},
            },
        },
    }

    @classmethod
    def identifying_key(cls, config) -> str:
        return config["domain"]

    @classmethod
    def normalize(cls, config):
        config["domain"] = config["domain"].strip().lower()
        config.setdefault("document_root", "public" if config["framework"] == "laravel" else "")
        return config

    @classmethod
    def check(cls, config, host) -> List[str]:
        errors = domain_errors(config["domain"])
        resources = ManagedResource.objects.filter(host=host)
        if not resources.filter(kind="reverse_proxy", status="active").exists():
            errors.append("The reverse proxy is not installed on this host")
        if config["framework"] != "static":
            runtimes = resources.filter(kind="runtime", status="active")
            if not config.get("runtime_version"):
                default = runtimes.filter(config_json__is_site_default=True).first()
                if default:
                    config["runtime_version"] = default.identifying_key
            if not runtimes.filter(identifying_key=config.get("runtime_version", "")).exists():
                errors.append("runtime_version must name a PHP version installed on this host")
        if config["framework"] == "wordpress":
            wordpress = config.get("wordpress") or {}
            missing = [name for name in WORDPRESS_FIELDS if not wordpress.get(name)]
            if missing:
                errors.append(f"wordpress requires {', '.join(missing)}")
        if ".." in config.get("document_root", ""):
            errors.append("document_root must stay inside the release directory")
        return errors

    @property
    def domain(self) -> str:
        return self.config["domain"]

    @property
    def root(self) -> str:
        return site_root(self.app_user, self.domain)

    @property
    def vhost_path(self) -> str:
        return f"/etc/nginx/sites-available/{self.domain}"

    def render_vhost(self) -> str:
        docroot = f"{self.root}/current/{self.config.get('document_root', '')}".rstrip("/")
        lines = [
            "server {",
            "    listen 80;",
            "    listen [::]:80;",
            f"    server_name {self.domain};",
            f"    root {docroot};",
            "    index index.html index.php;",
            f"    access_log {self.root}/logs/access.log;",
            f"    error_log {self.root}/logs/error.log;",
        ]
        if self.config["framework"] == "static":
            lines += ["    location / {", "        try_files $uri $uri/ =404;", "    }"]
        else:
            version = self.config["runtime_version"]
            lines += [
                "    location / {",
                "        try_files $uri $uri/ /index.php?$query_string;",
                "    }",
                "    location ~ \\.php$ {",
                "        include snippets/fastcgi-php.conf;",
                f"        fastcgi_pass unix:/run/php/php{version}-fpm.sock;",
                "        fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;",
                "    }",
                "    location ~ /\\.(?!well-known) {",
                "        deny all;",
                "    }",
            ]
        lines.append("}")
        return "\n".join(lines)

    def _framework_stage(self, release: str) -> Stage:
        framework = self.config["framework"]
        docroot = f"{release}/{self.config.get('document_root', '')}".rstrip("/")
        if framework == "wordpress":
            wp = self.config["wordpress"]
            quoted = {key: shlex.quote(str(value)) for key, value in wp.items()}
            title = shlex.quote(wp.get("title") or self.domain)
            db_host = quoted.get("db_host", "localhost")
            return Stage(
                "Installing WordPress",
                [
                    f"cd {release} && wp core download --quiet",
                    f"cd {release} && wp config create --dbname={quoted['db_name']} --dbuser={quoted['db_user']} "
                    f"--dbpass={quoted['db_password']} --dbhost={db_host}",
                    f"cd {release} && wp core install --url=https://{self.domain} --title={title} "
                    f"--admin_user={quoted['admin_user']} --admin_password={quoted['admin_password']} "
                    f"--admin_email={quoted['admin_email']} --skip-email",
                ],
                user=self.app_user,
                secrets=secret_forms(wp["db_password"], wp["admin_password"]),
            )
        if framework == "static":
            page = f"<!doctype html><title>{self.domain}</title><p>{self.domain} is ready.</p>"
            return Stage("Publishing placeholder", [f"mkdir -p {docroot}", write_file(f"{docroot}/index.html", page)], user=self.app_user)
        return Stage(
            "Publishing placeholder",
            [f"mkdir -p {docroot}", write_file(f"{docroot}/index.php", "<?php echo 'Ready';")],
            user=self.app_user,
        )

    def install_stages(self) -> List[Stage]:
        release = f"{self.root}/releases/initial"
        stages = [
            Stage(
                "Preparing site directory",
                [
                    f"mkdir -p {release} {self.root}/shared {self.root}/logs",
                    f"ln -sfn {release} {self.root}/current",
                    f"chown -R {self.app_user}:{self.app_user} {self.root}",
                ],
            ),
        ]
        if self.config["framework"] == "wordpress":
            stages.append(
                Stage(
                    "Installing WP-CLI",
                    [f"command -v wp >/dev/null 2>&1 || (curl -fsSL -o /usr/local/bin/wp {WP_CLI_URL} && chmod +x /usr/local/bin/wp)"],
                )
            )
        stages += [
            self._framework_stage(release),
            Stage(
                "Configuring web server",
                [
                    write_file(self.vhost_path, self.render_vhost()),
                    f"ln -sf {self.vhost_path} /etc/nginx/sites-enabled/{self.domain}",
                    "nginx -t",
                ],
            ),
            Stage("Reloading web server", ["systemctl reload nginx"]),
        ]
        return stages

    def uninstall_stages(self) -> List[Stage]:
        return [
            Stage(
                "Removing web server config",
                [f"rm -f /etc/nginx/sites-enabled/{self.domain} {self.vhost_path}", "nginx -t", "systemctl reload nginx"],
            ),
            Stage("Removing site files", [f"rm -rf {self.root}"]),
        ]

    def on_installed(self) -> None:
        repository = self.config.get("repository_url")
        if not repository:
            return
        SiteSource.objects.update_or_create(
            site=self.resource,
            defaults={
                "repository_url": repository,
                "branch": self.config.get("branch") or "main",
                "deploy_script": self.config.get("deploy_script", ""),
                "auto_deploy_enabled": bool(self.config.get("auto_deploy")),
            },
        )
